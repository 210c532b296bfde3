"""CLI interface for the ytdj set engine."""

import logging
import time
from pathlib import Path
from typing import Callable, NoReturn, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ytdj.config import Settings, get_settings
from ytdj.credits import InMemoryCreditLedger
from ytdj.errors import EngineError, ProviderError
from ytdj.logging_setup import configure_logging
from ytdj.models import ARC_TEMPLATES, AnchorTrack, Constraints
from ytdj.orchestrator import SetEngine
from ytdj.providers.base import TrackProvider
from ytdj.providers.openrouter import OpenRouterTrackProvider
from ytdj.snapshot import load_set, save_set
from ytdj.transitions import summarize

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="ytdj",
    help="Build and edit AI-curated DJ sets from a text prompt.",
    no_args_is_help=True,
)

console = Console()

T = TypeVar("T")

_SCORE_STYLES = {"smooth": "green", "ok": "yellow", "jarring": "red"}


@app.callback()
def main(
    log_level: str = typer.Option(
        None,
        "--log-level",
        help="Logging level (default: YTDJ_LOG_LEVEL or INFO)",
    ),
):
    """Build and edit AI-curated DJ sets from a text prompt."""
    configure_logging(log_level or get_settings().log_level)


def _with_retry(
    fn: Callable[[], T],
    max_retries: int = 1,
    base_delay: float = 2.0,
    operation: str = "operation",
) -> T:
    """Execute a function with exponential backoff retry.

    Only provider failures are retried; credit, lock and conflict errors
    are returned to the user on the first attempt.

    Args:
        fn: Function to execute.
        max_retries: Maximum number of attempts.
        base_delay: Base delay in seconds (doubles each retry).
        operation: Description for logging.
    """
    attempts = max(max_retries, 1)
    for attempt in range(attempts):
        try:
            return fn()
        except ProviderError as e:
            if attempt == attempts - 1:
                logger.error(f"{operation} failed after {attempts} attempts: {e}")
                raise

            wait_time = base_delay * (2 ** attempt)
            logger.warning(
                f"{operation} attempt {attempt + 1}/{attempts} failed: {e}. "
                f"Retrying in {wait_time:.1f}s..."
            )
            console.print(f"  Retry {attempt + 1}/{attempts} in {wait_time:.0f}s...")
            time.sleep(wait_time)

    raise RuntimeError("Unexpected retry failure")


def _build_provider(name: str, settings: Settings) -> TrackProvider:
    return OpenRouterTrackProvider(provider=name, settings=settings)


def _parse_anchor(text: str) -> AnchorTrack:
    artist, sep, title = text.partition(" - ")
    if not sep or not artist.strip() or not title.strip():
        raise ValueError(f'Expected "Artist - Title", got "{text}"')
    return AnchorTrack(title=title.strip(), artist=artist.strip())


def _build_ledger(settings: Settings) -> InMemoryCreditLedger:
    """Local ledger seeded from settings for a single CLI invocation."""
    ledger = InMemoryCreditLedger(default_tier=settings.tier)
    ledger.provision(settings.identity, settings.tier, settings.credits)
    return ledger


def _load_engine(path: Path, provider: str, settings: Settings) -> SetEngine:
    if not path.exists():
        console.print(f"[red]Set file not found: {path}[/red]")
        raise typer.Exit(1)
    try:
        return load_set(
            path,
            _build_provider(provider, settings),
            _build_ledger(settings),
            identity=settings.identity,
            default_track_count=settings.default_track_count,
            average_track_seconds=settings.average_track_seconds,
        )
    except (ValueError, KeyError) as e:
        console.print(f"[red]Could not read {path}: {e}[/red]")
        raise typer.Exit(1)


def _format_duration(seconds: float) -> str:
    total = int(round(seconds))
    return f"{total // 60}:{total % 60:02d}"


def _display_set(engine: SetEngine) -> None:
    """Display a set in a formatted table."""
    nodes = engine.sequence.nodes
    segmented = engine.segments.is_segmented
    names = {s.id: s.name for s in engine.segments.segments}
    segment_of: dict[int, str] = {}
    for segment_range in engine.segment_ranges():
        for i in range(segment_range.start_index, segment_range.end_index + 1):
            segment_of[i] = names.get(segment_range.segment_id, "")

    table = Table(title="DJ Set")
    table.add_column("#", style="cyan", width=3)
    if segmented:
        table.add_column("Segment", style="magenta", width=10)
    table.add_column("Node", style="dim", width=8)
    table.add_column("Title", style="white", width=30)
    table.add_column("Artist", width=20)
    table.add_column("BPM", justify="right", width=5)
    table.add_column("Energy", justify="right", width=6)
    table.add_column("Key", width=4)
    table.add_column("Next", width=8)

    for i, node in enumerate(nodes):
        track = node.track
        title = track.title[:28] + ".." if len(track.title) > 30 else track.title
        if node.is_locked:
            title = f"[bold]{title}[/bold] (locked)"

        transition = node.transition_to_next
        if transition is None:
            next_display = ""
        else:
            style = _SCORE_STYLES[transition.score]
            next_display = f"[{style}]{transition.score}[/{style}]"

        row = [str(i + 1)]
        if segmented:
            row.append(segment_of.get(i, ""))
        row.extend([
            node.id,
            title,
            track.artist,
            f"{track.bpm:g}" if track.bpm is not None else "?",
            f"{track.energy:g}" if track.energy is not None else "?",
            track.key or "",
            next_display,
        ])
        table.add_row(*row)

    console.print(table)
    console.print()

    summary = summarize(nodes)
    console.print(
        f"[bold]Transitions:[/bold] [green]{summary.smooth} smooth[/green], "
        f"[yellow]{summary.ok} ok[/yellow], [red]{summary.jarring} jarring[/red]"
    )
    if summary.average_bpm is not None:
        console.print(f"[bold]Average BPM:[/bold] {summary.average_bpm:.0f}")
    console.print(f"[bold]Total duration:[/bold] {_format_duration(engine.sequence.total_duration)}")


def _print_credits(engine: SetEngine) -> None:
    check = engine.ledger.check(engine.identity)
    console.print(f"[bold]Credits remaining:[/bold] {check.credits_remaining} ({check.tier})")


def _fail(action: str, error: Exception) -> NoReturn:
    console.print(f"[red]Error {action}: {error}[/red]")
    raise typer.Exit(1)


@app.command()
def generate(
    prompt: str = typer.Argument(
        ...,
        help="Describe the set: genre, vibe, venue, time of day",
    ),
    tracks: int = typer.Option(
        None,
        "--tracks",
        "-n",
        help="Number of tracks (default: from settings)",
    ),
    duration: int = typer.Option(
        None,
        "--duration",
        "-d",
        help="Target total duration in minutes",
    ),
    arc: str = typer.Option(
        None,
        "--arc",
        help=f"Energy arc: {', '.join(ARC_TEMPLATES)}",
    ),
    bpm_min: int = typer.Option(None, "--bpm-min", help="Lowest BPM"),
    bpm_max: int = typer.Option(None, "--bpm-max", help="Highest BPM"),
    include: list[str] = typer.Option(
        None,
        "--include",
        "-i",
        help='Track that must be in the set, as "Artist - Title" (repeatable)',
    ),
    provider: str = typer.Option(
        "openai",
        "--provider",
        "-p",
        help="Track provider: openai (default), claude, gemini",
    ),
    segments: bool = typer.Option(
        False,
        "--segments",
        help="Split the set into Warmup/Build/Peak/Land segments (pro tier)",
    ),
    out: Path = typer.Option(
        Path("set.json"),
        "--out",
        "-o",
        help="Where to save the set",
    ),
    retries: int = typer.Option(
        1,
        "--retries",
        help="Attempts for the provider call (each attempt costs nothing until it succeeds)",
    ),
):
    """
    Generate a new DJ set from a prompt.

    Example:
        ytdj generate "sunset deep house on a rooftop" --tracks 12
        ytdj generate "peak-time techno" --arc burn --bpm-min 128 --bpm-max 134
        ytdj generate "disco edits" -i "Chic - Good Times"
    """
    s = get_settings()
    if (bpm_min is None) != (bpm_max is None):
        console.print("[red]--bpm-min and --bpm-max must be given together[/red]")
        raise typer.Exit(1)

    try:
        constraints = Constraints(
            prompt=prompt,
            bpm_range=(bpm_min, bpm_max) if bpm_min is not None else None,
            arc_template=arc,
            track_count=tracks or s.default_track_count,
            target_duration_minutes=duration,
            anchor_tracks=tuple(_parse_anchor(text) for text in include or ()),
        )
        track_provider = _build_provider(provider, s)
    except ValueError as e:
        _fail("building request", e)

    console.print(Panel(
        f"[bold]Prompt:[/bold] {prompt}\n"
        f"[bold]Provider:[/bold] {provider}\n"
        f"[bold]Tracks:[/bold] {constraints.track_count}",
        title="ytdj",
    ))
    console.print()

    engine = SetEngine(
        provider=track_provider,
        ledger=_build_ledger(s),
        identity=s.identity,
        default_track_count=s.default_track_count,
        average_track_seconds=s.average_track_seconds,
    )

    try:
        _with_retry(
            lambda: engine.generate(constraints),
            max_retries=retries,
            operation=f"Generate set via {provider}",
        )
    except EngineError as e:
        _fail("generating set", e)

    if segments:
        try:
            engine.initialize_default_segments()
        except EngineError as e:
            console.print(f"[yellow]Segments not created: {e}[/yellow]")

    _display_set(engine)
    _print_credits(engine)
    save_set(engine, out)
    console.print(f"[bold]Saved:[/bold] {out}")


@app.command()
def show(
    path: Path = typer.Argument(..., help="Saved set file"),
):
    """Show a saved set with its segments and transitions."""
    s = get_settings()
    engine = _load_engine(path, "openai", s)
    _display_set(engine)

    if engine.segments.is_segmented:
        console.print()
        table = Table(title="Segments")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="magenta")
        table.add_column("Range")
        table.add_column("Duration")
        ranges = {r.segment_id: r for r in engine.segment_ranges()}
        for segment in engine.segments.segments:
            r = ranges[segment.id]
            span = "empty" if r.is_empty else f"{r.start_index + 1}-{r.end_index + 1}"
            spec = segment.duration
            size = f"{spec.count} tracks" if spec.type == "tracks" else f"{spec.minutes:g} min"
            table.add_row(segment.id, segment.name, span, size)
        console.print(table)


@app.command()
def swap(
    path: Path = typer.Argument(..., help="Saved set file"),
    node_id: str = typer.Argument(..., help="Node to replace"),
    provider: str = typer.Option("openai", "--provider", "-p", help="Track provider"),
    retries: int = typer.Option(1, "--retries", help="Attempts for the provider call"),
):
    """Replace one track, keeping the transitions around it in mind."""
    s = get_settings()
    engine = _load_engine(path, provider, s)
    try:
        node = _with_retry(
            lambda: engine.regenerate_node(node_id),
            max_retries=retries,
            operation=f"Swap node {node_id}",
        )
    except EngineError as e:
        _fail("swapping track", e)

    console.print(
        f"[green]Swapped {node_id} -> {node.id}:[/green] "
        f"{node.track.title} by {node.track.artist}"
    )
    _print_credits(engine)
    save_set(engine, path)


@app.command("regen-segment")
def regen_segment(
    path: Path = typer.Argument(..., help="Saved set file"),
    segment_id: str = typer.Argument(..., help="Segment to regenerate"),
    provider: str = typer.Option("openai", "--provider", "-p", help="Track provider"),
    retries: int = typer.Option(1, "--retries", help="Attempts for the provider call"),
):
    """Regenerate the unlocked tracks of one segment."""
    s = get_settings()
    engine = _load_engine(path, provider, s)
    try:
        result = _with_retry(
            lambda: engine.regenerate_segment(segment_id),
            max_retries=retries,
            operation=f"Regenerate segment {segment_id}",
        )
    except EngineError as e:
        _fail("regenerating segment", e)

    console.print(
        f"[green]Replaced {result.replaced_count} track(s)[/green] "
        f"in positions {result.start_index + 1}-{result.end_index + 1}"
    )
    _display_set(engine)
    _print_credits(engine)
    save_set(engine, path)


@app.command()
def lock(
    path: Path = typer.Argument(..., help="Saved set file"),
    node_id: str = typer.Argument(..., help="Node to lock"),
):
    """Lock a track so regeneration never replaces it."""
    s = get_settings()
    engine = _load_engine(path, "openai", s)
    try:
        engine.lock(node_id)
    except EngineError as e:
        _fail("locking node", e)
    console.print(f"[green]Locked {node_id}[/green]")
    save_set(engine, path)


@app.command()
def unlock(
    path: Path = typer.Argument(..., help="Saved set file"),
    node_id: str = typer.Argument(..., help="Node to unlock"),
):
    """Unlock a previously locked track."""
    s = get_settings()
    engine = _load_engine(path, "openai", s)
    try:
        engine.unlock(node_id)
    except EngineError as e:
        _fail("unlocking node", e)
    console.print(f"[green]Unlocked {node_id}[/green]")
    save_set(engine, path)


@app.command()
def config():
    """Show current configuration."""
    console.print(Panel("[bold]Current Configuration[/bold]", title="ytdj"))

    table = Table(show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    s = get_settings()

    def mask_key(key: str | None) -> str:
        if not key:
            return "(not set)"
        if len(key) > 12:
            return f"{key[:8]}...{key[-4:]}"
        return "***"

    table.add_row("OpenRouter API Key", mask_key(s.openrouter_api_key))
    table.add_row("OpenRouter Base URL", s.openrouter_base_url)
    table.add_row("OpenAI Model", s.openai_model)
    table.add_row("Claude Model", s.claude_model)
    table.add_row("Gemini Model", s.gemini_model)
    table.add_row("Provider Timeout", f"{s.provider_timeout_s:g}s")
    table.add_row("Default Tracks", str(s.default_track_count))
    table.add_row("Tier", s.tier)
    table.add_row("Credits", "(tier allowance)" if s.credits is None else str(s.credits))
    table.add_row("Identity", s.identity)

    console.print(table)


if __name__ == "__main__":
    app()

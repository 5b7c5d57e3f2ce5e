"""Command-line interface for Story Graph."""

import json
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from story_graph import __version__
from story_graph.models.entities import EntityType

console = Console()


def _load_system(snapshot_path: str, state_path: str | None = None):
    """Bootstrap a system from a domain snapshot file, plus saved state if given."""
    from story_graph.storage import load_state
    from story_graph.system import DomainSnapshot, UnifiedSystem

    system = UnifiedSystem()
    report = system.bootstrap(DomainSnapshot.from_json_file(Path(snapshot_path)))
    if state_path and not load_state(system, Path(state_path)):
        console.print(f"[yellow]![/yellow] No saved state at {state_path}")
    return system, report


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Log level (defaults to STORY_GRAPH_LOG_LEVEL)")
def main(log_level: str | None) -> None:
    """Story Graph - entity registry, timeline and continuity checking for story worlds."""
    from story_graph.config import get_settings
    from story_graph.utils.logging import setup_logging

    setup_logging((log_level or get_settings().log_level).upper())


@main.command()
def status() -> None:
    """Show the active configuration."""
    from story_graph.config import get_settings
    from story_graph.consistency.rules import RULE_TYPES

    settings = get_settings()
    console.print("[bold]Story Graph Status[/bold]\n")

    table = Table(title="Settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Data directory", str(settings.data_dir))
    table.add_row("State file", str(settings.state_file))
    table.add_row("Search limit", str(settings.search_limit))
    table.add_row("Fuzzy threshold", str(settings.fuzzy_threshold))
    table.add_row("Auto-fix", "enabled" if settings.auto_fix_enabled else "disabled")
    table.add_row("Max correction passes", str(settings.max_correction_passes))
    console.print(table)

    console.print(f"\n[bold]Built-in rules:[/bold] {', '.join(RULE_TYPES)}")


@main.command()
@click.argument("snapshot", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(), help="Write timeline views and history to this state file")
def bootstrap(snapshot: str, output: str | None) -> None:
    """Build the entity graph from a domain snapshot (JSON)."""
    from story_graph.storage import save_state

    system, report = _load_system(snapshot)
    stats = system.registry.get_entity_stats()

    console.print(f"[green]✓[/green] Loaded {report.entities} entities, {report.relationships} relationships")

    table = Table(title="Entities by Type")
    table.add_column("Type", style="cyan")
    table.add_column("Count", style="green", justify="right")
    for entity_type, count in sorted(stats["entities_by_type"].items()):
        table.add_row(entity_type, str(count))
    console.print(table)

    if report.skipped:
        console.print(f"\n[yellow]Skipped {len(report.skipped)} invalid records:[/yellow]")
        for skipped in report.skipped:
            console.print(f"  {skipped.domain_type} {skipped.record_id}")
            for error in skipped.errors:
                console.print(f"    [dim]{error}[/dim]")

    if output:
        save_state(system, Path(output))
        console.print(f"\n[green]✓[/green] State written to {output}")


@main.command()
@click.argument("snapshot", type=click.Path(exists=True))
@click.argument("query")
@click.option("--limit", "-l", type=int, default=None, help="Maximum results")
@click.option(
    "--type",
    "-t",
    "entity_types",
    multiple=True,
    type=click.Choice([t.value for t in EntityType]),
    help="Restrict to entity type (repeatable)",
)
def search(snapshot: str, query: str, limit: int | None, entity_types: tuple[str, ...]) -> None:
    """Search entities by name, tag or description."""
    from story_graph.config import get_settings
    from story_graph.registry.search import EntityFilter, SearchOptions

    system, _ = _load_system(snapshot)
    flt = EntityFilter(types=[EntityType(t) for t in entity_types]) if entity_types else None
    results = system.registry.search_entities(
        SearchOptions(query=query, filter=flt, limit=limit or get_settings().search_limit)
    )

    if not results:
        console.print(f"[yellow]No entities match '{query}'[/yellow]")
        return

    table = Table(title=f"Results for '{query}'")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Match", style="green")
    for result in results:
        table.add_row(result.entity.id, result.entity.name, result.entity.type.value, result.tier.name.lower())
    console.print(table)


@main.command()
@click.argument("snapshot", type=click.Path(exists=True))
@click.argument("entity_id")
def related(snapshot: str, entity_id: str) -> None:
    """List entities linked to ENTITY_ID."""
    system, _ = _load_system(snapshot)
    entity = system.find_entity(entity_id)
    if entity is None:
        console.print(f"[red]✗[/red] No entity with id {entity_id}")
        return

    console.print(f"[bold]{entity.name}[/bold] [dim]({entity.type.value})[/dim]\n")
    for other in system.find_related_entities(entity_id):
        edges = system.registry.get_relationships_between(entity_id, other.id)
        kinds = ", ".join(e.relationship_type.value for e in edges)
        console.print(f"  {other.name} [dim]({other.type.value}; {kinds})[/dim]")


@main.command()
@click.argument("snapshot", type=click.Path(exists=True))
@click.option("--state", "-s", "state_path", type=click.Path(), help="Saved state file with timeline events")
@click.option("--view", "-v", "view_name", help="View name (defaults to the active view)")
def timeline(snapshot: str, state_path: str | None, view_name: str | None) -> None:
    """Show a timeline view, grouped the way the view groups."""
    system, _ = _load_system(snapshot, state_path)
    view = system.timeline.get_view_by_name(view_name) if view_name else system.timeline.active_view
    if view is None:
        console.print(f"[red]✗[/red] No view named {view_name or '(active)'}")
        return

    console.print(f"[bold]{view.name}[/bold] [dim]scope={view.scope.value} sort={view.sort_by.value}[/dim]\n")
    positions = system.timeline.positions()
    groups = system.timeline.group_view(view.id)
    if not groups:
        console.print("[dim]No events[/dim]")
    for key, events in groups.items():
        console.print(f"[cyan]{key}[/cyan]")
        for event in events:
            day = positions.get(event.id)
            when = f"day {day:g}" if day is not None else "undated"
            console.print(f"  {when:>10}  {event.name}")


@main.command()
@click.argument("states", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(), help="Write checked snapshots (JSON)")
def check(states: str, output: str | None) -> None:
    """Run continuity rules over world-state snapshots (JSON list)."""
    from story_graph.consistency.engine import ConsistencyEngine
    from story_graph.models.world_state import WorldState

    with open(states, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("snapshots", [])

    engine = ConsistencyEngine()
    try:
        snapshots = sorted(
            (WorldState.model_validate(d) for d in data),
            key=lambda s: (s.story_id, s.chapter_number),
        )
        for snapshot in snapshots:
            engine.add_snapshot(snapshot)
    except ValueError as e:
        console.print(f"[red]✗[/red] Invalid snapshots: {escape(str(e))}")
        raise SystemExit(1)

    table = Table(title="Continuity Findings")
    table.add_column("Story", style="dim")
    table.add_column("Ch.", justify="right")
    table.add_column("Type")
    table.add_column("Category", style="cyan")
    table.add_column("Sev.", justify="right")
    table.add_column("Finding")
    table.add_column("Fixed", style="green")

    total = 0
    failing = 0
    for story_id in engine.stories():
        for outcome in engine.check_story(story_id):
            if outcome.has_errors:
                failing += 1
            for result in outcome.results:
                total += 1
                table.add_row(
                    story_id,
                    str(outcome.state.chapter_number),
                    result.type.value,
                    result.category.value,
                    str(result.severity),
                    result.description + (f" ({result.details})" if result.details else ""),
                    "yes" if result.auto_fixable else "",
                )

    if total:
        console.print(table)
        if failing:
            console.print(f"\n[red]✗[/red] {failing} chapters with errors")
    else:
        console.print("[green]✓[/green] No continuity problems found")

    if output:
        with open(output, "w", encoding="utf-8") as f:
            json.dump(engine.to_dict(), f, indent=2)
        console.print(f"\n[green]✓[/green] Checked snapshots written to {output}")


@main.command()
@click.argument("snapshot", type=click.Path(exists=True))
@click.option("--state", "-s", "state_path", type=click.Path(), help="Saved state file")
def validate(snapshot: str, state_path: str | None) -> None:
    """Cross-check the graph, timeline and snapshot history."""
    system, _ = _load_system(snapshot, state_path)
    report = system.validate_system_consistency()

    if report.is_valid:
        console.print("[green]✓[/green] System is consistent")
    else:
        console.print(f"[red]✗[/red] {len(report.issues)} issues found")
        for issue in report.issues:
            console.print(f"  [red]-[/red] {issue}")

    if report.suggestions:
        console.print("\n[bold]Suggestions:[/bold]")
        for suggestion in report.suggestions:
            console.print(f"  [dim]-[/dim] {suggestion}")


if __name__ == "__main__":
    main()

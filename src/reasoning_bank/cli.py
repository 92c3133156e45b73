"""CLI commands for the reasoning bank.

These commands can be called from shell scripts and agent hooks.
"""

import json
import sys
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Iterator

import click

from reasoning_bank.config import get_settings
from reasoning_bank.models import DISTILLED_CONFIDENCE, ReasoningBankError, new_memory
from reasoning_bank.service import ReasoningBankService, create_service


@contextmanager
def _service() -> Iterator[ReasoningBankService]:
    service = create_service(get_settings())
    try:
        yield service
    finally:
        service.close()


def _fail(use_json: bool, error: Exception) -> None:
    if use_json:
        click.echo(json.dumps({"success": False, "error": str(error)}))
    else:
        click.echo(f"Error: {error}", err=True)
    raise SystemExit(1)


@click.group()
@click.option("--json", "use_json", is_flag=True, help="Output in JSON format")
@click.pass_context
def cli(ctx: click.Context, use_json: bool) -> None:
    """CLI commands for the reasoning bank."""
    ctx.ensure_object(dict)
    ctx.obj["json"] = use_json


@cli.command()
@click.argument("title")
@click.option("-c", "--content", help="Memory content (or use stdin)")
@click.option(
    "-f", "--file", "filepath", type=click.Path(exists=True), help="Read content from file"
)
@click.option("-p", "--project", "project_id", help="Project ID (default from settings)")
@click.option(
    "-o",
    "--outcome",
    type=click.Choice(["success", "failure"]),
    default="success",
    help="Whether this is a strategy that worked or an anti-pattern",
)
@click.option("-d", "--description", default="", help="Provenance note")
@click.option("-t", "--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--distilled", is_flag=True, help="Memory was extracted from a session transcript")
@click.pass_context
def record(
    ctx: click.Context,
    title: str,
    content: str | None,
    filepath: str | None,
    project_id: str | None,
    outcome: str,
    description: str,
    tags: tuple[str, ...],
    distilled: bool,
) -> None:
    """Record a memory.

    Examples:

        reasoning-bank-cli record "Retry flaky uploads" -c "Wrap upload in backoff"

        git log -1 --format=%B | reasoning-bank-cli record "Release fix" -o failure
    """
    use_json = ctx.obj["json"]

    if filepath:
        content = Path(filepath).read_text(encoding="utf-8")
    elif content is None:
        content = sys.stdin.read()

    with _service() as service:
        try:
            memory = new_memory(
                project_id or service.settings.default_project_id,
                title,
                content,
                outcome=outcome,
                tags=list(tags),
            )
            memory.description = description
            if distilled:
                memory.confidence = DISTILLED_CONFIDENCE
            memory = service.record(memory, explicit=not distilled)
        except ReasoningBankError as e:
            _fail(use_json, e)

    if use_json:
        click.echo(json.dumps({"success": True, **memory.to_metadata()}))
    else:
        click.echo(f"Recorded memory {memory.id} (confidence={memory.confidence:.2f})")


@cli.command()
@click.argument("query")
@click.option("-p", "--project", "project_id", help="Project ID (default from settings)")
@click.option("-n", "--limit", default=0, type=int, help="Maximum results (0 = default)")
@click.pass_context
def search(ctx: click.Context, query: str, project_id: str | None, limit: int) -> None:
    """Search trusted memories by meaning."""
    use_json = ctx.obj["json"]

    with _service() as service:
        try:
            results = service.search(
                project_id or service.settings.default_project_id, query, limit
            )
        except ReasoningBankError as e:
            _fail(use_json, e)

    if use_json:
        payload = [{**asdict(r), "outcome": r.outcome.value} for r in results]
        click.echo(json.dumps({"success": True, "results": payload}))
        return

    if not results:
        click.echo("No memories found")
        return
    for r in results:
        click.echo(f"[{r.confidence:.2f}] {r.title} ({r.outcome.value}, score={r.score:.3f})")
        click.echo(f"  id: {r.id}")
        click.echo(f"  {r.content}")


@cli.command()
@click.argument("memory_id")
@click.option("--helpful/--unhelpful", default=True, help="Whether the memory helped")
@click.pass_context
def feedback(ctx: click.Context, memory_id: str, helpful: bool) -> None:
    """Rate a memory as helpful or unhelpful."""
    use_json = ctx.obj["json"]

    with _service() as service:
        try:
            confidence = service.feedback(memory_id, helpful)
        except ReasoningBankError as e:
            _fail(use_json, e)

    if use_json:
        click.echo(json.dumps({"success": True, "memory_id": memory_id, "confidence": confidence}))
    else:
        click.echo(f"Confidence for {memory_id} is now {confidence:.2f}")


@cli.command()
@click.argument("memory_id")
@click.option("--success/--failure", "succeeded", default=True, help="Task outcome")
@click.option("-s", "--session", "session_id", help="Session the outcome was observed in")
@click.pass_context
def outcome(ctx: click.Context, memory_id: str, succeeded: bool, session_id: str | None) -> None:
    """Report the outcome of a task a memory was used for."""
    use_json = ctx.obj["json"]

    with _service() as service:
        try:
            confidence = service.record_outcome(memory_id, succeeded, session_id)
        except ReasoningBankError as e:
            _fail(use_json, e)

    if use_json:
        click.echo(json.dumps({"success": True, "memory_id": memory_id, "confidence": confidence}))
    else:
        click.echo(f"Confidence for {memory_id} is now {confidence:.2f}")


@cli.command()
@click.option("-p", "--project", "project_id", help="Project ID (default from settings)")
@click.pass_context
def count(ctx: click.Context, project_id: str | None) -> None:
    """Count memories stored for a project."""
    use_json = ctx.obj["json"]

    with _service() as service:
        project = project_id or service.settings.default_project_id
        try:
            total = service.count(project)
        except ReasoningBankError as e:
            _fail(use_json, e)

    if use_json:
        click.echo(json.dumps({"success": True, "project_id": project, "count": total}))
    else:
        click.echo(f"{total} memories in {project}")


@cli.command("list")
@click.option("-p", "--project", "project_id", help="Project ID (default from settings)")
@click.option("-n", "--limit", default=20, show_default=True, help="Page size (0 = all)")
@click.option("--offset", default=0, show_default=True, help="Number of memories to skip")
@click.pass_context
def list_memories(ctx: click.Context, project_id: str | None, limit: int, offset: int) -> None:
    """List a project's memories in storage order."""
    use_json = ctx.obj["json"]

    with _service() as service:
        project = project_id or service.settings.default_project_id
        try:
            memories = service.list_memories(project, limit=limit, offset=offset)
        except ReasoningBankError as e:
            _fail(use_json, e)

    if use_json:
        payload = [m.to_metadata() for m in memories]
        click.echo(json.dumps({"success": True, "project_id": project, "memories": payload}))
        return

    if not memories:
        click.echo(f"No memories in {project}")
        return
    for m in memories:
        click.echo(f"[{m.confidence:.2f}] {m.title} ({m.state.value}, used {m.usage_count}x)")
        click.echo(f"  id: {m.id}")


@cli.command()
@click.argument("memory_ids", nargs=-1, required=True)
@click.pass_context
def rollup(ctx: click.Context, memory_ids: tuple[str, ...]) -> None:
    """Fold signals older than the recent window into lifetime aggregates."""
    use_json = ctx.obj["json"]

    rolled: dict[str, int] = {}
    with _service() as service:
        try:
            for memory_id in memory_ids:
                rolled[memory_id] = service.rollup_signals(memory_id)
        except ReasoningBankError as e:
            _fail(use_json, e)

    if use_json:
        click.echo(json.dumps({"success": True, "rolled_up": rolled}))
    else:
        for memory_id, n in rolled.items():
            click.echo(f"{memory_id}: rolled up {n} signals")


def main() -> int:
    """Main CLI entry point."""
    try:
        cli(standalone_mode=False)
        return 0
    except click.ClickException as e:
        e.show()
        return 1
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 1


if __name__ == "__main__":
    sys.exit(main())

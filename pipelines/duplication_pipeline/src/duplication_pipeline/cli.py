from __future__ import annotations

import typer
from sqlalchemy import select

from episodes_core.db.enums import DuplicationStage
from episodes_core.db.models import Block, Duplication, Episode, Item, Part
from episodes_core.db.queries import count_rows
from episodes_core.logging import configure_logging
from duplication_pipeline.errors import DuplicationError
from duplication_pipeline.orchestrator import DUPLICATION_CHAIN, DuplicationOrchestrator
from duplication_pipeline.runtime import DuplicationChain, WorkerPool
from duplication_pipeline.stages import StageContext

app = typer.Typer(help="Episode duplication pipeline (episode, parts, items, blocks).")

STAGE_JOBS = {job.stage: job for job in DUPLICATION_CHAIN}


def _context() -> StageContext:
    configure_logging()
    return StageContext.from_settings()


@app.command("duplicate")
def duplicate(episode_id: int) -> None:
    """
    Duplicate an episode with all its parts, items and blocks.
    """
    context = _context()
    orchestrator = DuplicationOrchestrator(context)
    try:
        duplication_id, future = orchestrator.submit(episode_id)
        typer.echo(f"[duplicate] duplication_id={duplication_id} source_episode_id={episode_id}")
        results = future.result()
    except DuplicationError as exc:
        typer.echo(f"[duplicate] failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    finally:
        orchestrator.shutdown()

    for result in results:
        typer.echo(f"- {result.stage.value}: {result.outcome.value} inserted={result.inserted}")
    _print_status(context, duplication_id)


@app.command("status")
def status(duplication_id: int) -> None:
    """
    Print the status, target episode and per-stage progress of a duplication.
    """
    _print_status(_context(), duplication_id)


def _print_status(context: StageContext, duplication_id: int) -> None:
    with context.session_factory() as session:
        duplication = session.get(Duplication, duplication_id)
        if duplication is None:
            typer.echo(f"[status] duplication not found: id={duplication_id}", err=True)
            raise typer.Exit(code=1)

        typer.echo(f"[status] duplication_id={duplication.id} status={duplication.status.value}")
        typer.echo(f"[status] source_episode_id={duplication.episode_id} new_episode_id={duplication.new_episode_id}")
        for stage, count in duplication.stage_progress.items():
            typer.echo(f"- {stage.value}: {count}")


@app.command("run-stage")
def run_stage(duplication_id: int, stage: DuplicationStage) -> None:
    """
    Run a single stage job for an existing duplication (manual resumption).

    The status gate still applies: a `failed` or `completed` duplication is skipped.
    """
    context = _context()
    with context.session_factory() as session:
        source_episode_id = session.scalar(select(Duplication.episode_id).where(Duplication.id == duplication_id))
    if source_episode_id is None:
        typer.echo(f"[run-stage] duplication not found: id={duplication_id}", err=True)
        raise typer.Exit(code=1)

    chain = DuplicationChain(duplication_id, source_episode_id, (STAGE_JOBS[stage],))
    with WorkerPool(context, workers=1) as pool:
        try:
            results = pool.run(chain)
        except DuplicationError as exc:
            typer.echo(f"[run-stage] failed: {exc}", err=True)
            raise typer.Exit(code=1) from exc

    for result in results:
        typer.echo(f"[run-stage] {result.stage.value}: {result.outcome.value} inserted={result.inserted}")


@app.command("inspect-episode")
def inspect_episode(episode_id: int) -> None:
    """
    Quick sanity inspection of an episode tree and how much of it are copies.
    """
    context = _context()
    with context.session_factory() as session:
        episode = session.get(Episode, episode_id)
        if episode is None:
            typer.echo(f"[inspect] episode not found: id={episode_id}", err=True)
            raise typer.Exit(code=1)

        part_ids = list(session.scalars(select(Part.id).where(Part.episode_id == episode_id)).all())
        item_ids = list(session.scalars(select(Item.id).where(Item.part_id.in_(part_ids))).all()) if part_ids else []

        typer.echo(f"[inspect] episode_id={episode.id} title={episode.title!r} orig_id={episode.orig_id}")
        for label, model, parent_ids in (
            ("parts", Part, [episode_id]),
            ("items", Item, part_ids),
            ("blocks", Block, item_ids),
        ):
            total = count_rows(session, model, parent_ids) if parent_ids else 0
            copies = count_rows(session, model, parent_ids, duplicates_only=True) if parent_ids else 0
            typer.echo(f"[inspect] {label}={total} duplicates={copies}")


if __name__ == "__main__":
    app()

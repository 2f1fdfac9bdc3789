from __future__ import annotations

import pytest
import structlog
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from structlog.testing import capture_logs

from episodes_core.db.enums import DuplicationStage, DuplicationStatus
from episodes_core.db.models import Block, Duplication, Episode, Item, Part
from duplication_pipeline.errors import NewEpisodeIdMissing
from duplication_pipeline.levels import PartsDuplicator, remap_rows
from duplication_pipeline.stages import BlocksStage, EpisodeStage, ItemsStage, PartsStage, StageOutcome
from duplication_pipeline.stages import base as stage_base

from conftest import count, create_duplication, failing_inserts, load_duplication, seed_episode

CHAIN = (EpisodeStage, PartsStage, ItemsStage, BlocksStage)


def run_stages(context, duplication_id, source_id, stages=CHAIN):
    return [stage(duplication_id, source_id).handle(context) for stage in stages]


def test_full_copy_preserves_structure(session_factory, context):
    source_id = seed_episode(session_factory, parts=1, items_per_part=2, blocks_per_item=3)
    duplication_id = create_duplication(session_factory, source_id)

    results = run_stages(context, duplication_id, source_id)

    assert [result.outcome for result in results] == [StageOutcome.completed] * 4
    assert [result.inserted for result in results] == [1, 1, 2, 6]

    duplication = load_duplication(session_factory, duplication_id)
    assert duplication.status is DuplicationStatus.completed
    assert duplication.progress == {"episode": 1, "parts": 1, "items": 2, "blocks": 6}
    new_episode_id = duplication.new_episode_id

    with session_factory() as session:
        new_parts = session.scalars(select(Part).where(Part.episode_id == new_episode_id)).all()
        assert len(new_parts) == 1
        new_part = new_parts[0]
        source_part = session.get(Part, new_part.orig_id)
        assert source_part.episode_id == source_id
        assert new_part.name == source_part.name

        new_items = session.scalars(select(Item).where(Item.part_id == new_part.id)).all()
        assert len(new_items) == 2
        for new_item in new_items:
            assert session.get(Item, new_item.orig_id).part_id == source_part.id

        new_item_ids = [item.id for item in new_items]
        new_blocks = session.scalars(select(Block).where(Block.item_id.in_(new_item_ids))).all()
        assert len(new_blocks) == 6
        items_by_id = {item.id: item for item in new_items}
        for new_block in new_blocks:
            source_block = session.get(Block, new_block.orig_id)
            # Parent chaining: the copy's item is the copy of the source block's item.
            assert items_by_id[new_block.item_id].orig_id == source_block.item_id
            assert new_block.payload() == source_block.payload()


def test_source_tree_is_left_untouched(session_factory, context):
    source_id = seed_episode(session_factory, parts=2, items_per_part=2, blocks_per_item=2)
    with session_factory() as session:
        before = [block.payload() for block in session.scalars(select(Block).order_by(Block.id)).all()]

    duplication_id = create_duplication(session_factory, source_id)
    run_stages(context, duplication_id, source_id)

    with session_factory() as session:
        source_blocks = session.scalars(select(Block).where(Block.orig_id.is_(None)).order_by(Block.id)).all()
        assert [block.payload() for block in source_blocks] == before
        assert count(session, Part, Part.episode_id == source_id) == 2
        assert count(session, Part, Part.orig_id.is_not(None)) == 2
        assert count(session, Item, Item.orig_id.is_not(None)) == 4
        assert count(session, Block, Block.orig_id.is_not(None)) == 8


def test_items_are_remapped_across_outer_chunks(session_factory, context):
    # chunk_size=10 and outer_chunk_factor=10: copied parts are walked 100 at a time.
    source_id = seed_episode(session_factory, parts=250, items_per_part=1, blocks_per_item=0)
    duplication_id = create_duplication(session_factory, source_id)
    run_stages(context, duplication_id, source_id, (EpisodeStage, PartsStage))

    with capture_logs() as logs:
        result = ItemsStage(duplication_id, source_id).handle(context)

    assert result.inserted == 250
    parent_chunks = [log["parents_in_chunk"] for log in logs if log["event"] == "duplication.parents.chunk"]
    assert parent_chunks == [100, 100, 50]

    new_episode_id = load_duplication(session_factory, duplication_id).new_episode_id
    with session_factory() as session:
        rows = session.execute(
            select(Item.orig_id, Part.orig_id.label("part_orig_id"))
            .join(Part, Part.id == Item.part_id)
            .where(Part.episode_id == new_episode_id)
        ).all()
        assert len(rows) == 250
        for row in rows:
            assert session.get(Item, row.orig_id).part_id == row.part_orig_id


def test_parts_are_inserted_in_chunks(session_factory, context):
    source_id = seed_episode(session_factory, parts=25, items_per_part=0)
    duplication_id = create_duplication(session_factory, source_id)
    run_stages(context, duplication_id, source_id, (EpisodeStage,))

    with capture_logs() as logs:
        PartsStage(duplication_id, source_id).handle(context)

    inserted = [log["inserted"] for log in logs if log["event"] == "duplication.chunk.inserted"]
    assert inserted == [10, 10, 5]
    assert load_duplication(session_factory, duplication_id).progress["parts"] == 25


def test_blocks_walk_parts_then_items(session_factory, context):
    source_id = seed_episode(session_factory, parts=3, items_per_part=4, blocks_per_item=5)
    duplication_id = create_duplication(session_factory, source_id)
    run_stages(context, duplication_id, source_id, (EpisodeStage, PartsStage, ItemsStage))

    with capture_logs() as logs:
        result = BlocksStage(duplication_id, source_id).handle(context)

    assert result.inserted == 60
    # 12 copied items with chunk_size=10: two parent chunks under one ancestor chunk.
    assert [log["parts_in_chunk"] for log in logs if log["event"] == "duplication.ancestors.chunk"] == [3]
    assert [log["parents_in_chunk"] for log in logs if log["event"] == "duplication.parents.chunk"] == [10, 2]
    # block_chunk_size=20, per parent chunk of items (50 blocks, then 10).
    assert [log["inserted"] for log in logs if log["event"] == "duplication.chunk.inserted"] == [20, 20, 10, 10]


def test_rerunning_parts_stage_only_inserts_missing_parts(session_factory, context):
    source_id = seed_episode(session_factory, parts=25, items_per_part=0)
    duplication_id = create_duplication(session_factory, source_id)
    run_stages(context, duplication_id, source_id, (EpisodeStage,))
    new_episode_id = load_duplication(session_factory, duplication_id).new_episode_id

    # A previous run committed copies of the first 12 parts before dying.
    with session_factory() as session:
        first = session.scalars(select(Part).where(Part.episode_id == source_id).order_by(Part.id).limit(12)).all()
        session.add_all(Part(episode_id=new_episode_id, orig_id=part.id, name=part.name) for part in first)
        session.commit()

    with capture_logs() as logs:
        result = PartsStage(duplication_id, source_id).handle(context)

    assert result.inserted == 13
    finished = [log for log in logs if log["event"] == "duplication.level.finished"][0]
    assert finished["already_copied"] == 12
    with session_factory() as session:
        orig_ids = session.scalars(select(Part.orig_id).where(Part.episode_id == new_episode_id)).all()
        assert len(orig_ids) == 25
        assert len(set(orig_ids)) == 25

    # A second full re-run is a no-op.
    assert PartsStage(duplication_id, source_id).handle(context).inserted == 0


@pytest.mark.parametrize("stage", [PartsStage, ItemsStage, BlocksStage])
def test_content_stage_without_target_episode_fails(session_factory, context, stage):
    source_id = seed_episode(session_factory)
    duplication_id = create_duplication(session_factory, source_id, status=DuplicationStatus.in_progress)

    with capture_logs() as logs:
        with pytest.raises(NewEpisodeIdMissing):
            stage(duplication_id, source_id).handle(context)

    assert "duplication.new_episode_id.missing" in [log["event"] for log in logs]
    duplication = load_duplication(session_factory, duplication_id)
    assert duplication.status is DuplicationStatus.failed
    assert duplication.progress == {}
    with session_factory() as session:
        for model in (Part, Item, Block):
            assert count(session, model, model.orig_id.is_not(None)) == 0


def test_episode_without_parts_completes_with_nothing_to_copy(session_factory, context):
    source_id = seed_episode(session_factory, parts=0)
    duplication_id = create_duplication(session_factory, source_id)

    with capture_logs() as logs:
        results = run_stages(context, duplication_id, source_id)

    assert [result.inserted for result in results] == [1, 0, 0, 0]
    assert "duplication.level.no_parents" in [log["event"] for log in logs]
    assert load_duplication(session_factory, duplication_id).status is DuplicationStatus.completed


def test_rows_without_parent_mapping_are_dropped():
    parts = [Part(id=1, episode_id=10, name="kept"), Part(id=2, episode_id=11, name="orphan")]

    with capture_logs() as logs:
        copies = remap_rows(Part, parts, {10: 20}, logger=structlog.get_logger("tests"))

    assert copies == [{"name": "kept", "episode_id": 20, "orig_id": 1}]
    dropped = [log for log in logs if log["event"] == "duplication.row.dropped"]
    assert dropped == [
        {
            "event": "duplication.row.dropped",
            "log_level": "warning",
            "level": "parts",
            "row_id": 2,
            "orig_parent_id": 11,
            "reason": "missing parent mapping",
        }
    ]


def test_duplicating_twice_creates_independent_copies(session_factory, context):
    source_id = seed_episode(session_factory, parts=2, items_per_part=1, blocks_per_item=1)
    first = create_duplication(session_factory, source_id)
    run_stages(context, first, source_id)
    second = create_duplication(session_factory, source_id)
    run_stages(context, second, source_id)

    targets = [load_duplication(session_factory, d).new_episode_id for d in (first, second)]
    assert targets[0] != targets[1]
    assert load_duplication(session_factory, second).progress == {"episode": 1, "parts": 2, "items": 2, "blocks": 2}
    with session_factory() as session:
        assert count(session, Episode) == 3
        for target in targets:
            assert count(session, Part, Part.episode_id == target) == 2


def test_transient_insert_failure_is_retried_inside_the_stage(engine, session_factory, context):
    source_id = seed_episode(session_factory, parts=25, items_per_part=0)
    duplication_id = create_duplication(session_factory, source_id)
    run_stages(context, duplication_id, source_id, (EpisodeStage,))
    calls = failing_inserts(engine, "parts", failures=2)

    with capture_logs() as logs:
        result = PartsStage(duplication_id, source_id).handle(context)

    assert calls["failed"] == 2
    assert result.inserted == 25
    duplication = load_duplication(session_factory, duplication_id)
    assert duplication.status is DuplicationStatus.in_progress
    assert duplication.progress == {"episode": 1, "parts": 25}
    events = [log["event"] for log in logs]
    assert events.count("transaction.retry") == 2
    # Retries repeat the write only; each chunk is prepared once.
    assert events.count("duplication.chunk.prepared") == 3
    with session_factory() as session:
        orig_ids = session.scalars(select(Part.orig_id).where(Part.episode_id == duplication.new_episode_id)).all()
        assert sorted(orig_ids) == sorted(set(orig_ids))
        assert len(orig_ids) == 25


def test_exhausted_insert_retries_fail_the_duplication(engine, session_factory, context):
    source_id = seed_episode(session_factory, parts=25, items_per_part=0)
    duplication_id = create_duplication(session_factory, source_id)
    run_stages(context, duplication_id, source_id, (EpisodeStage,))
    # First chunk commits; every attempt at the second one fails.
    calls = failing_inserts(engine, "parts", fail_after=1)

    with pytest.raises(OperationalError):
        PartsStage(duplication_id, source_id).handle(context)

    assert calls["failed"] == context.settings.transaction_attempts
    duplication = load_duplication(session_factory, duplication_id)
    assert duplication.status is DuplicationStatus.failed
    assert duplication.progress == {"episode": 1, "parts": 10}
    with session_factory() as session:
        assert count(session, Part, Part.episode_id == duplication.new_episode_id) == 10


def test_progress_update_reads_the_committed_record(session_factory, context, settings):
    source_id = seed_episode(session_factory, parts=3, items_per_part=0)
    duplication_id = create_duplication(session_factory, source_id)
    run_stages(context, duplication_id, source_id, (EpisodeStage,))
    new_episode_id = load_duplication(session_factory, duplication_id).new_episode_id

    with session_factory() as session:
        # Loaded before another writer bumps the counter.
        session.get(Duplication, duplication_id)
        with session_factory() as other:
            other.get(Duplication, duplication_id).add_progress(DuplicationStage.parts, 7)
            other.commit()

        PartsDuplicator.from_settings(
            session,
            duplication_id=duplication_id,
            new_episode_id=new_episode_id,
            settings=settings,
        ).run()

    assert load_duplication(session_factory, duplication_id).progress == {"episode": 1, "parts": 10}


def test_failure_to_mark_failed_keeps_the_stage_error(session_factory, context, monkeypatch):
    source_id = seed_episode(session_factory)
    duplication_id = create_duplication(session_factory, source_id, status=DuplicationStatus.in_progress)

    def broken_mark_failed(session, duplication_id):
        raise OperationalError("UPDATE duplications ...", {}, Exception("server closed the connection"))

    monkeypatch.setattr(stage_base, "mark_failed", broken_mark_failed)

    with capture_logs() as logs:
        with pytest.raises(NewEpisodeIdMissing):
            PartsStage(duplication_id, source_id).handle(context)

    events = [log["event"] for log in logs]
    assert events.index("duplication.stage.failed") < events.index("duplication.status.mark_failed_error")
    failed = [log for log in logs if log["event"] == "duplication.stage.failed"][0]
    assert failed["error_class"] == "NewEpisodeIdMissing"

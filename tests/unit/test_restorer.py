"""Unit tests for snapshot restore."""

import pytest

from fwguard.core.executor import CommandExecutor
from fwguard.services.packet_filter import Family
from fwguard.services.restorer import Restorer, RestoreStatus
from fwguard.services.state_store import StateStore

from tests.conftest import IPSETS, RULES_V4, RULES_V6


BOTH = [Family.V4, Family.V6]


@pytest.fixture
def restorer(ctx, guard_config, packet_filter) -> Restorer:
    store = StateStore(ctx, CommandExecutor(ctx), guard_config.snapshots)
    return Restorer(packet_filter, store, ctx.console)


def write_sets(guard_config, content=IPSETS):
    guard_config.snapshots.ipsets.parent.mkdir(parents=True, exist_ok=True)
    guard_config.snapshots.ipsets.write_text(content)


class TestRestore:
    """Tests for single-family restore."""

    def test_restore_replaces_live_state(self, restorer, packet_filter, snapshots):
        outcome = restorer.restore(Family.V4)

        assert outcome.ok
        assert packet_filter.live[Family.V4] == RULES_V4

    def test_restore_is_idempotent(self, restorer, packet_filter, snapshots):
        """Restoring an already-correct state changes nothing and reports no error."""
        first = restorer.restore(Family.V4)
        state_after_first = dict(packet_filter.live)

        second = restorer.restore(Family.V4)

        assert first.ok and second.ok
        assert packet_filter.live == state_after_first

    def test_missing_snapshot_fails_with_cause(self, restorer, packet_filter):
        """A missing file is a failed restore and live state is untouched."""
        packet_filter.live[Family.V4] = "live rules\n"

        outcome = restorer.restore(Family.V4)

        assert outcome.status is RestoreStatus.FAILED
        assert "No v4 snapshot" in outcome.cause
        assert packet_filter.live[Family.V4] == "live rules\n"
        assert packet_filter.loaded() == []

    def test_rejected_snapshot_fails(self, restorer, packet_filter, snapshots):
        packet_filter.fail_load.add(Family.V6)

        outcome = restorer.restore(Family.V6)

        assert outcome.status is RestoreStatus.FAILED
        assert "rejected" in outcome.cause
        assert str(outcome).startswith("v6: failed")


class TestRestoreAll:
    """Tests for ordered restore of sets and families."""

    def test_v4_before_v6(self, restorer, packet_filter, snapshots):
        report = restorer.restore_all(BOTH)

        assert report.ok
        assert packet_filter.loaded() == [Family.V4, Family.V6]
        assert report.sets is None

    def test_partial_failure_continues(self, restorer, packet_filter, snapshots):
        """A v4 failure does not stop the v6 restore."""
        snapshots.snapshots.rules_v4.unlink()

        report = restorer.restore_all(BOTH)

        assert [o.status for o in report.families] == [RestoreStatus.FAILED, RestoreStatus.SUCCESS]
        assert report.failed[0].family is Family.V4
        assert packet_filter.live[Family.V6] == RULES_V6
        assert not report.ok

    def test_sets_restored_before_rules(self, restorer, packet_filter, snapshots):
        write_sets(snapshots)

        report = restorer.restore_all(BOTH, sets_enabled=True)

        assert report.sets.ok
        assert packet_filter.calls[0] == ("load_sets",)
        assert packet_filter.loaded() == [Family.V4, Family.V6]

    def test_set_failure_blocks_rule_restore(self, restorer, packet_filter, snapshots):
        """Rules are never restored against sets that failed to load."""
        write_sets(snapshots)
        packet_filter.fail_sets = True

        report = restorer.restore_all(BOTH, sets_enabled=True)

        assert report.sets.status is RestoreStatus.FAILED
        assert all(o.status is RestoreStatus.SKIPPED for o in report.families)
        assert packet_filter.loaded() == []
        assert not report.ok

    def test_missing_set_file_is_skipped_not_failed(self, restorer, packet_filter, snapshots):
        """No set snapshot is a warning; rule restore still goes ahead."""
        report = restorer.restore_all(BOTH, sets_enabled=True)

        assert report.sets.status is RestoreStatus.SKIPPED
        assert report.ok
        assert packet_filter.loaded() == [Family.V4, Family.V6]

    def test_missing_set_file_with_set_rules_flags_family(self, restorer, packet_filter, snapshots):
        """Rules that reference a set fail cleanly when the set snapshot is missing."""
        snapshots.snapshots.rules_v4.write_text(
            RULES_V4.replace("COMMIT", "-A INPUT -m set --match-set blocklist src -j DROP\nCOMMIT")
        )

        report = restorer.restore_all(BOTH, sets_enabled=True)

        assert report.sets.status is RestoreStatus.SKIPPED
        assert report.families[0].status is RestoreStatus.FAILED
        assert "blocklist" in report.families[0].cause
        assert report.families[1].ok

    def test_sets_disabled_ignores_set_file(self, restorer, packet_filter, snapshots):
        write_sets(snapshots)

        report = restorer.restore_all(BOTH)

        assert report.sets is None
        assert ("load_sets",) not in packet_filter.calls

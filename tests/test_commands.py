"""Tests for issuing commands and the consumer-side lifecycle writes."""
from datetime import timedelta, timezone

import pytest
from sqlmodel import Session, select

from control_panel import commands
from control_panel.commands import (
    claim, fetch_pending, issue_command, known_kinds, list_commands, load_command, report_status,
)
from control_panel.errors import InvalidTransition, NotAuthorized, NotFound, ValidationError
from control_panel.models import Command
from control_panel.policy import DeviceActor

OWNER = "user-alice"
OTHER = "user-bob"
STRANGER = "user-mallory"


def _rows(session):
    return session.exec(select(Command)).all()


class TestIssueCommand:
    def test_issue_creates_pending_row(self, session, prime):
        cmd = issue_command(session, prime.id, "unmute_zoom", None, OWNER)
        rows = _rows(session)
        assert len(rows) == 1
        assert rows[0].id == cmd.id
        assert cmd.status == "pending"
        assert cmd.executed_at is None
        assert cmd.sent_by == OWNER
        assert cmd.payload == {}

    def test_timestamps_read_back_as_aware_utc(self, session, engine, prime, t0):
        cmd = issue_command(session, prime.id, "next_track", {}, OWNER, now=t0.replace(tzinfo=None))
        with Session(engine, expire_on_commit=False) as fresh:
            row = fresh.get(Command, cmd.id)
            assert row.sent_at == t0
            assert row.sent_at.utcoffset() == timedelta(0)
            device = fresh.get(type(prime), prime.id)
            assert device.created_at.tzinfo is not None

    def test_offset_input_is_normalised(self, session, engine, prime, t0):
        local = t0.astimezone(timezone(timedelta(hours=2)))
        cmd = issue_command(session, prime.id, "next_track", {}, OWNER, now=local)
        with Session(engine, expire_on_commit=False) as fresh:
            assert fresh.get(Command, cmd.id).sent_at.isoformat() == "2025-10-19T12:00:00+00:00"

    def test_issue_leaves_device_untouched(self, session, prime):
        issue_command(session, prime.id, "next_track", {"source": "dashboard"}, OWNER)
        d = session.get(type(prime), prime.id, populate_existing=True)
        assert d.status == "unknown"
        assert d.last_seen is None

    def test_strangers_are_rejected_and_nothing_is_written(self, session, prime):
        for user in (OTHER, STRANGER):
            with pytest.raises(NotAuthorized):
                issue_command(session, prime.id, "unmute_zoom", {}, user)
        assert _rows(session) == []

    def test_device_credentials_cannot_issue(self, session, prime):
        with pytest.raises(NotAuthorized):
            issue_command(session, prime.id, "unmute_zoom", {}, DeviceActor(prime.id))

    def test_unknown_kind(self, session, prime):
        with pytest.raises(ValidationError):
            issue_command(session, prime.id, "format_disk", {}, OWNER)
        assert _rows(session) == []

    def test_payload_must_be_an_object(self, session, prime):
        with pytest.raises(ValidationError):
            issue_command(session, prime.id, "next_track", ["not", "a", "map"], OWNER)

    def test_missing_device(self, session):
        with pytest.raises(NotFound):
            issue_command(session, "nope", "next_track", {}, OWNER)

    def test_extra_kinds_from_settings(self, monkeypatch):
        monkeypatch.setattr(commands.settings, "extra_command_kinds", ["mute_zoom"])
        assert known_kinds() == {"unmute_zoom", "next_track", "mute_zoom"}


class TestFetchPending:
    def test_oldest_first(self, session, prime, t0):
        c3 = issue_command(session, prime.id, "next_track", {}, OWNER, now=t0 + timedelta(seconds=3))
        c1 = issue_command(session, prime.id, "next_track", {}, OWNER, now=t0 + timedelta(seconds=1))
        c2 = issue_command(session, prime.id, "unmute_zoom", {}, OWNER, now=t0 + timedelta(seconds=2))
        assert [c.id for c in fetch_pending(session, prime.id)] == [c1.id, c2.id, c3.id]

    def test_only_pending_for_that_device(self, session, prime, vip, t0):
        a = issue_command(session, prime.id, "next_track", {}, OWNER, now=t0)
        b = issue_command(session, prime.id, "next_track", {}, OWNER, now=t0 + timedelta(seconds=1))
        issue_command(session, vip.id, "next_track", {}, OWNER)
        claim(session, a.id)
        assert [c.id for c in fetch_pending(session, prime.id)] == [b.id]

    def test_is_lazy_iterator(self, session, prime):
        issue_command(session, prime.id, "next_track", {}, OWNER)
        it = fetch_pending(session, prime.id)
        assert iter(it) is it
        assert len(list(it)) == 1

    def test_other_device_credential_rejected(self, session, prime, vip):
        with pytest.raises(NotAuthorized):
            fetch_pending(session, prime.id, actor=DeviceActor(vip.id))


class TestClaim:
    def test_claim_succeeds_once(self, session, engine, prime):
        cmd = issue_command(session, prime.id, "unmute_zoom", {}, OWNER)
        with Session(engine, expire_on_commit=False) as other:
            assert claim(session, cmd.id) is True
            assert claim(other, cmd.id) is False
        assert load_command(session, cmd.id).status == "delivered"

    def test_claim_of_terminal_command(self, session, prime):
        cmd = issue_command(session, prime.id, "unmute_zoom", {}, OWNER)
        report_status(session, cmd.id, "failed")
        assert claim(session, cmd.id) is False

    def test_claim_of_deleted_command(self, session):
        with pytest.raises(NotFound):
            claim(session, "gone")


class TestReportStatus:
    def test_executed_sets_timestamp(self, session, prime):
        cmd = issue_command(session, prime.id, "unmute_zoom", {}, OWNER)
        assert claim(session, cmd.id)
        done = report_status(session, cmd.id, "executed")
        assert done.status == "executed"
        assert done.executed_at is not None

    def test_explicit_executed_at(self, session, prime, t0):
        cmd = issue_command(session, prime.id, "unmute_zoom", {}, OWNER)
        claim(session, cmd.id)
        assert report_status(session, cmd.id, "executed", executed_at=t0).executed_at == t0

    @pytest.mark.parametrize("path", [["failed"], ["delivered", "failed"]])
    def test_failed_never_has_timestamp(self, session, prime, t0, path):
        cmd = issue_command(session, prime.id, "next_track", {}, OWNER)
        for status in path:
            out = report_status(session, cmd.id, status, executed_at=t0)
            assert out.executed_at is None

    @pytest.mark.parametrize("path,bad", [
        ([], "executed"),
        ([], "pending"),
        (["delivered"], "pending"),
        (["delivered"], "delivered"),
        (["delivered", "executed"], "failed"),
        (["delivered", "executed"], "delivered"),
        (["failed"], "delivered"),
    ])
    def test_illegal_moves(self, session, prime, path, bad):
        cmd = issue_command(session, prime.id, "next_track", {}, OWNER)
        for status in path:
            report_status(session, cmd.id, status)
        before = load_command(session, cmd.id)
        with pytest.raises(InvalidTransition):
            report_status(session, cmd.id, bad)
        after = load_command(session, cmd.id)
        assert (after.status, after.executed_at) == (before.status, before.executed_at)

    def test_losing_writer_cannot_overwrite_terminal(self, session, engine, prime, monkeypatch):
        """A status write that races another writer fails instead of clobbering it."""
        cmd = issue_command(session, prime.id, "next_track", {}, OWNER)
        assert claim(session, cmd.id)

        real_check = commands.check_transition

        def check_then_lose_race(current, requested):
            # the other writer lands between our read and our update
            monkeypatch.setattr(commands, "check_transition", real_check)
            with Session(engine, expire_on_commit=False) as other:
                report_status(other, cmd.id, "executed")
            return real_check(current, requested)

        monkeypatch.setattr(commands, "check_transition", check_then_lose_race)
        with pytest.raises(InvalidTransition) as exc:
            report_status(session, cmd.id, "failed")
        assert exc.value.current == "executed"

        row = load_command(session, cmd.id)
        assert row.status == "executed"
        assert row.executed_at is not None

    def test_end_users_cannot_update_status(self, session, prime):
        cmd = issue_command(session, prime.id, "next_track", {}, OWNER)
        with pytest.raises(NotAuthorized):
            report_status(session, cmd.id, "delivered", actor=OWNER)

    def test_device_credential_scoped_to_its_device(self, session, prime, vip):
        cmd = issue_command(session, prime.id, "next_track", {}, OWNER)
        with pytest.raises(NotAuthorized):
            report_status(session, cmd.id, "delivered", actor=DeviceActor(vip.id))
        assert report_status(session, cmd.id, "delivered", actor=DeviceActor(prime.id)).status == "delivered"

    def test_missing_command(self, session):
        with pytest.raises(NotFound):
            report_status(session, "gone", "delivered")


class TestScenario:
    def test_prime_unmute_round_trip(self, session):
        from control_panel.devices import register_device

        device = register_device(session, "Prime", "192.168.1.100", 3000, OWNER)
        cmd = issue_command(session, device.id, "unmute_zoom", {}, OWNER)
        rows = _rows(session)
        assert len(rows) == 1 and rows[0].status == "pending"

        assert claim(session, cmd.id)
        done = report_status(session, cmd.id, "executed")
        assert done.status == "executed"
        assert done.executed_at is not None

        with pytest.raises(InvalidTransition):
            report_status(session, cmd.id, "pending")
        assert load_command(session, cmd.id).status == "executed"


class TestListCommands:
    def test_newest_first_and_limited(self, session, prime, t0):
        ids = [
            issue_command(session, prime.id, "next_track", {}, OWNER, now=t0 + timedelta(seconds=i)).id
            for i in range(4)
        ]
        out = list_commands(session, prime.id, OWNER, limit=3)
        assert [c.id for c in out] == ids[::-1][:3]

    def test_stranger_cannot_list(self, session, prime):
        with pytest.raises(NotAuthorized):
            list_commands(session, prime.id, STRANGER)

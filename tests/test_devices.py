"""Tests for device registration, update and deletion."""
import pytest
from sqlmodel import select

from control_panel.commands import fetch_pending, issue_command
from control_panel.devices import (
    assign_device_team, delete_device, get_device, list_devices, register_device, update_device,
    validate_host,
)
from control_panel.errors import InvalidPort, NotAuthorized, NotFound, ValidationError
from control_panel.models import Command, Device
from control_panel.teams import add_member, create_team

OWNER = "user-alice"
OTHER = "user-bob"


class TestRegisterDevice:
    def test_new_device_defaults(self, session):
        d = register_device(session, "Prime", "192.168.1.100", 3000, OWNER)
        assert d.id
        assert d.status == "unknown"
        assert d.team_id is None
        assert d.last_seen is None
        assert d.owner_id == OWNER

    @pytest.mark.parametrize("port", [1, 3000, 65535])
    def test_port_bounds_accepted(self, session, port):
        assert register_device(session, "Prime", "10.0.0.1", port, OWNER).port == port

    @pytest.mark.parametrize("port", [0, 65536, -1])
    def test_port_out_of_range(self, session, port):
        with pytest.raises(InvalidPort):
            register_device(session, "Prime", "10.0.0.1", port, OWNER)
        assert session.exec(select(Device)).all() == []

    def test_invalid_port_is_a_validation_error(self):
        assert issubclass(InvalidPort, ValidationError)

    @pytest.mark.parametrize("name,host", [("", "10.0.0.1"), ("   ", "10.0.0.1"), ("Prime", ""), ("Prime", "  ")])
    def test_empty_name_or_host(self, session, name, host):
        with pytest.raises(ValidationError):
            register_device(session, name, host, 3000, OWNER)

    def test_name_is_trimmed(self, session):
        assert register_device(session, "  VIP ", "vip.local", 3000, OWNER).name == "VIP"


class TestValidateHost:
    @pytest.mark.parametrize("host", ["192.168.1.100", "::1", "prime-desk.local", "localhost"])
    def test_accepts(self, host):
        assert validate_host(host) == host

    @pytest.mark.parametrize("host", ["192.168.1.300", "bad host", "-leading.dash", "a..b"])
    def test_rejects(self, host):
        with pytest.raises(ValidationError):
            validate_host(host)


class TestVisibility:
    def test_owner_sees_device(self, session, prime):
        assert get_device(session, prime.id, OWNER).id == prime.id
        assert [d.id for d in list_devices(session, OWNER)] == [prime.id]

    def test_stranger_cannot_see_device(self, session, prime):
        with pytest.raises(NotAuthorized):
            get_device(session, prime.id, OTHER)
        assert list_devices(session, OTHER) == []

    def test_missing_device(self, session):
        with pytest.raises(NotFound):
            get_device(session, "nope", OWNER)


class TestUpdateDevice:
    def test_owner_can_update(self, session, prime):
        d = update_device(session, prime.id, OWNER, name="Prime 2", port=3001)
        assert (d.name, d.port, d.ip_address) == ("Prime 2", 3001, "192.168.1.100")

    def test_update_validates_port(self, session, prime):
        with pytest.raises(InvalidPort):
            update_device(session, prime.id, OWNER, port=70000)

    def test_team_creator_can_update_but_not_delete(self, session):
        device = register_device(session, "VIP", "10.0.0.2", 3000, OTHER)
        team = create_team(session, "Ops", OWNER)
        add_member(session, team.id, OWNER, OTHER)
        assign_device_team(session, device.id, OTHER, team.id)

        assert update_device(session, device.id, OWNER, name="VIP room").name == "VIP room"
        with pytest.raises(NotAuthorized):
            delete_device(session, device.id, OWNER)

    def test_stranger_cannot_update(self, session, prime):
        with pytest.raises(NotAuthorized):
            update_device(session, prime.id, OTHER, name="mine now")


class TestAssignTeam:
    def test_owner_assigns_and_detaches(self, session, prime):
        team = create_team(session, "Ops", OWNER)
        assert assign_device_team(session, prime.id, OWNER, team.id).team_id == team.id
        assert assign_device_team(session, prime.id, OWNER, None).team_id is None

    def test_cannot_assign_to_foreign_team(self, session, prime):
        team = create_team(session, "Theirs", OTHER)
        with pytest.raises(NotAuthorized):
            assign_device_team(session, prime.id, OWNER, team.id)

    def test_unknown_team(self, session, prime):
        with pytest.raises(NotFound):
            assign_device_team(session, prime.id, OWNER, "missing")


class TestDeleteDevice:
    def test_only_owner_deletes(self, session, prime):
        with pytest.raises(NotAuthorized):
            delete_device(session, prime.id, OTHER)
        assert get_device(session, prime.id, OWNER)

    def test_delete_cascades_commands(self, session, prime, vip):
        for _ in range(3):
            issue_command(session, prime.id, "next_track", {}, OWNER)
        kept = issue_command(session, vip.id, "unmute_zoom", {}, OWNER)

        delete_device(session, prime.id, OWNER)

        rows = session.exec(select(Command)).all()
        assert [c.id for c in rows] == [kept.id]
        with pytest.raises(NotFound):
            fetch_pending(session, prime.id)

"""Tests for the reservation tools and the tool registry."""

from conftest import ALICE, BOB, CAROL, MOCKINGBIRD, MOCKINGBIRD_COPY, T0
from fastmcp import FastMCP

from library_circulation.server import create_server
from library_circulation.tools import all_tools
from library_circulation.tools.reservations import (
    cancel_reservation_handler,
    confirm_reservation_pickup_handler,
    create_reservation_handler,
    list_reservations_handler,
    update_expired_reservations_handler,
    update_reservation_status_handler,
)


async def reserve(actor, member_id, material_id=MOCKINGBIRD):
    result = await create_reservation_handler(
        {"actor": actor, "member_id": member_id, "material_id": material_id}
    )
    assert not result.get("isError"), result
    return result["data"]["reservation"]


class TestCreateReservationTool:
    async def test_member_reserves_for_self(self, library, as_member):
        result = await create_reservation_handler(
            {"actor": as_member(ALICE), "member_id": ALICE, "material_id": MOCKINGBIRD}
        )

        reservation = result["data"]["reservation"]
        assert reservation["status"] == "READY"
        assert reservation["copy_id"] == MOCKINGBIRD_COPY
        assert "ready for pickup" in result["content"][0]["text"]

    async def test_queued_reservation_reports_position(self, library, as_member):
        await reserve(as_member(ALICE), ALICE)

        result = await create_reservation_handler(
            {"actor": as_member(BOB), "member_id": BOB, "material_id": MOCKINGBIRD}
        )

        assert result["data"]["reservation"]["queue_position"] == 1
        assert "queue position 1" in result["content"][0]["text"]

    async def test_member_cannot_reserve_for_others(self, library, as_member):
        result = await create_reservation_handler(
            {"actor": as_member(ALICE), "member_id": BOB, "material_id": MOCKINGBIRD}
        )

        assert result["error"]["category"] == "forbidden"

    async def test_staff_reserves_for_member(self, library, staff):
        reservation = await reserve(staff, CAROL)

        assert reservation["member_id"] == CAROL

    async def test_duplicate_is_a_conflict(self, library, as_member):
        await reserve(as_member(ALICE), ALICE)

        result = await create_reservation_handler(
            {"actor": as_member(ALICE), "member_id": ALICE, "material_id": MOCKINGBIRD}
        )

        assert result["error"]["category"] == "conflict"


class TestMemberHoldActions:
    async def test_confirm_pickup(self, library, as_member):
        reservation = await reserve(as_member(ALICE), ALICE)

        result = await confirm_reservation_pickup_handler(
            {"actor": as_member(ALICE), "reservation_id": reservation["id"]}
        )

        assert result["data"]["reservation"]["confirmed_at"] is not None

    async def test_staff_cannot_confirm_for_member(self, library, staff, as_member):
        reservation = await reserve(as_member(ALICE), ALICE)

        result = await confirm_reservation_pickup_handler(
            {"actor": staff, "reservation_id": reservation["id"]}
        )

        assert result["error"]["category"] == "forbidden"

    async def test_cancel_passes_copy_to_next_member(self, library, as_member):
        first = await reserve(as_member(ALICE), ALICE)
        second = await reserve(as_member(BOB), BOB)

        result = await cancel_reservation_handler(
            {"actor": as_member(ALICE), "reservation_id": first["id"]}
        )
        bob_view = await list_reservations_handler({"actor": as_member(BOB)})

        assert result["data"]["reservation"]["status"] == "CANCELLED"
        bob_hold = bob_view["data"]["items"][0]
        assert bob_hold["id"] == second["id"]
        assert bob_hold["status"] == "READY"

    async def test_other_member_cannot_cancel(self, library, as_member):
        reservation = await reserve(as_member(ALICE), ALICE)

        result = await cancel_reservation_handler(
            {"actor": as_member(BOB), "reservation_id": reservation["id"]}
        )

        assert result["error"]["category"] == "forbidden"

    async def test_unknown_reservation(self, library, as_member):
        result = await cancel_reservation_handler(
            {"actor": as_member(ALICE), "reservation_id": "reservation_missing"}
        )

        assert result["error"]["category"] == "not_found"


class TestStaffHoldTools:
    async def test_update_status_requires_staff(self, library, as_member):
        reservation = await reserve(as_member(ALICE), ALICE)

        result = await update_reservation_status_handler(
            {
                "actor": as_member(ALICE),
                "reservation_id": reservation["id"],
                "status": "PICKED_UP",
            }
        )

        assert result["error"]["category"] == "forbidden"

    async def test_staff_marks_pickup(self, library, staff, as_member):
        reservation = await reserve(as_member(ALICE), ALICE)

        result = await update_reservation_status_handler(
            {"actor": staff, "reservation_id": reservation["id"], "status": "PICKED_UP"}
        )

        assert result["data"]["reservation"]["status"] == "PICKED_UP"
        assert "now PICKED_UP" in result["content"][0]["text"]

    async def test_cannot_move_back_to_pending(self, library, staff, as_member):
        reservation = await reserve(as_member(ALICE), ALICE)

        result = await update_reservation_status_handler(
            {"actor": staff, "reservation_id": reservation["id"], "status": "PENDING"}
        )

        assert result["error"]["category"] == "invalid_request"

    async def test_pickup_of_queued_hold_is_invalid_state(self, library, staff, as_member):
        await reserve(as_member(ALICE), ALICE)
        queued = await reserve(as_member(BOB), BOB)

        result = await update_reservation_status_handler(
            {"actor": staff, "reservation_id": queued["id"], "status": "PICKED_UP"}
        )

        assert result["error"]["category"] == "invalid_state"

    async def test_expiry_sweep(self, circulation, staff):
        expired = circulation.reserve(ALICE, MOCKINGBIRD, now=T0)

        result = await update_expired_reservations_handler({"actor": staff})

        assert result["data"]["updated"] == 1
        assert result["data"]["reservation_ids"] == [expired.id]

    async def test_expiry_sweep_requires_staff(self, library, as_member):
        result = await update_expired_reservations_handler({"actor": as_member(ALICE)})

        assert result["error"]["category"] == "forbidden"


class TestListReservationsTool:
    async def test_member_listing_includes_stats(self, library, as_member):
        await reserve(as_member(ALICE), ALICE)

        result = await list_reservations_handler({"actor": as_member(ALICE)})

        assert result["data"]["total"] == 1
        assert result["data"]["stats"]["ready_for_pickup"] == 1

    async def test_staff_listing_across_members(self, library, staff, as_member):
        await reserve(as_member(ALICE), ALICE)
        await reserve(as_member(BOB), BOB)

        result = await list_reservations_handler({"actor": staff, "status": "PENDING"})

        assert result["data"]["total"] == 1
        assert "stats" not in result["data"]


class TestToolRegistry:
    def test_every_tool_takes_an_actor(self):
        names = [tool["name"] for tool in all_tools]

        assert len(names) == len(set(names)) == 17
        for tool in all_tools:
            assert "actor" in tool["inputSchema"]["properties"], tool["name"]
            assert callable(tool["handler"])

    def test_create_server(self):
        assert isinstance(create_server(), FastMCP)

import pytest
from sqlalchemy import text

from fulfillment import state_machine
from fulfillment.errors import InvalidStatus, OrderNotFound
from fulfillment.state_machine import OrderStatus

from conftest import fetch_all, fetch_one, place_order, set_order_status, variant_stock

pytestmark = pytest.mark.usefixtures("catalog")


async def transition(session_factory, order_id, status, expected_from=None):
    async with session_factory() as session:
        result = await state_machine.transition(session, order_id, status, expected_from)
        await session.commit()
    return result


async def moves_for(session_factory, order_id):
    return await fetch_all(
        session_factory,
        "SELECT variant_id, quantity, type, note FROM stock_move WHERE reference = :ref",
        ref=order_id,
    )


async def test_confirm_converts_reservation_into_sale(orchestrator, session_factory):
    order = await place_order(orchestrator, session_factory)
    assert await variant_stock(session_factory, "v-shirt") == (5, 2)

    result = await transition(session_factory, order.order_id, "confirmed")

    assert result.applied
    assert result.previous_status == OrderStatus.PENDING
    assert len(result.moves) == 1
    assert await variant_stock(session_factory, "v-shirt") == (3, 0)
    [move] = await moves_for(session_factory, order.order_id)
    assert (move.variant_id, move.quantity, move.type) == ("v-shirt", -2, "sale")
    row = await fetch_one(
        session_factory, "SELECT stock_reserved FROM orders WHERE id = :id", id=order.order_id
    )
    assert not row.stock_reserved


async def test_confirm_twice_records_one_sale(orchestrator, session_factory):
    order = await place_order(orchestrator, session_factory)
    await transition(session_factory, order.order_id, "confirmed")
    second = await transition(session_factory, order.order_id, "confirmed")

    assert second.applied
    assert second.moves == []
    assert await variant_stock(session_factory, "v-shirt") == (3, 0)
    assert len(await moves_for(session_factory, order.order_id)) == 1


@pytest.mark.parametrize("from_status", ["confirmed", "processing", "shipped"])
async def test_cancel_after_confirmation_returns_stock(
    orchestrator, session_factory, from_status
):
    order = await place_order(orchestrator, session_factory)
    await transition(session_factory, order.order_id, "confirmed")
    await set_order_status(session_factory, order.order_id, from_status)

    result = await transition(session_factory, order.order_id, "cancelled")

    assert result.applied and len(result.moves) == 1
    assert await variant_stock(session_factory, "v-shirt") == (5, 0)
    returned = [m for m in await moves_for(session_factory, order.order_id) if m.type == "return"]
    assert returned[0].quantity == 2
    assert returned[0].note == "Order cancelled"


async def test_cancel_pending_releases_reservation_without_moves(
    orchestrator, session_factory
):
    order = await place_order(orchestrator, session_factory)

    result = await transition(session_factory, order.order_id, "cancelled")

    assert result.applied
    assert result.moves == []
    assert await variant_stock(session_factory, "v-shirt") == (5, 0)


async def test_refund_from_delivered_returns_stock(orchestrator, session_factory):
    order = await place_order(orchestrator, session_factory)
    await transition(session_factory, order.order_id, "confirmed")
    await set_order_status(session_factory, order.order_id, "delivered")

    result = await transition(session_factory, order.order_id, "refunded")

    assert len(result.moves) == 1
    assert await variant_stock(session_factory, "v-shirt") == (5, 0)
    notes = {m.note for m in await moves_for(session_factory, order.order_id)}
    assert "Order refunded" in notes


async def test_transition_without_effect_writes_status_only(orchestrator, session_factory):
    order = await place_order(orchestrator, session_factory)
    await transition(session_factory, order.order_id, "confirmed")
    await set_order_status(session_factory, order.order_id, "shipped")

    result = await transition(session_factory, order.order_id, "delivered")

    assert result.applied and result.moves == []
    row = await fetch_one(
        session_factory, "SELECT status FROM orders WHERE id = :id", id=order.order_id
    )
    assert row.status == "delivered"


async def test_expected_from_mismatch_is_a_no_op(orchestrator, session_factory):
    order = await place_order(orchestrator, session_factory)
    await transition(session_factory, order.order_id, "cancelled")

    result = await transition(
        session_factory, order.order_id, "confirmed", expected_from=OrderStatus.PENDING
    )

    assert not result.applied
    assert result.new_status == OrderStatus.CANCELLED
    assert await variant_stock(session_factory, "v-shirt") == (5, 0)
    assert await moves_for(session_factory, order.order_id) == []


async def test_deleted_variant_is_skipped(orchestrator, session_factory):
    order = await place_order(orchestrator, session_factory)
    async with session_factory() as session:
        await session.execute(
            text("UPDATE order_item SET variant_id = NULL WHERE order_id = :id"),
            {"id": order.order_id},
        )
        await session.commit()

    result = await transition(session_factory, order.order_id, "confirmed")

    assert result.applied and result.moves == []


async def test_unknown_status(orchestrator, session_factory):
    order = await place_order(orchestrator, session_factory)
    with pytest.raises(InvalidStatus):
        await transition(session_factory, order.order_id, "teleported")


async def test_unknown_order(session_factory):
    with pytest.raises(OrderNotFound):
        await transition(session_factory, "missing", "confirmed")


async def test_confirm_records_one_sale_per_item(orchestrator, session_factory):
    order = await place_order(
        orchestrator, session_factory, items=[("v-shirt", 2), ("v-book", 1)]
    )

    result = await transition(session_factory, order.order_id, "confirmed")

    moves = await moves_for(session_factory, order.order_id)
    assert len(result.moves) == len(moves) == 2
    assert {m.type for m in moves} == {"sale"}
    assert sum(m.quantity for m in moves) == -3

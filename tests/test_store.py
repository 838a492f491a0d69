import pytest

from autoexit.core.position import PartialTpRule, PositionStatus, StopLossType


async def test_position_round_trip_with_joined_context(store, make_position):
    await store.upsert_signal("sig-9", "ALPHA_CALLS", take_profit_1=1.4)
    await store.insert_position(make_position(
        signal_id="sig-9", is_alpha_token=None, stop_loss_type=StopLossType.TRAILING,
        partial_tp_enabled=True, partial_tp_rules=[(10, 30), (25, 50)], partial_tp_triggered={1},
    ))
    pos = await store.get_position("pos-1")
    assert pos.partial_tp_rules == [PartialTpRule(10, 30), PartialTpRule(25, 50)]
    assert pos.partial_tp_triggered == {1}
    assert pos.stop_loss_type is StopLossType.TRAILING
    assert pos.is_alpha_token is None
    assert pos.signal_source == "ALPHA_CALLS"
    assert pos.signal_take_profit == 1.4
    assert pos.owner_identity == "owner-1"
    assert pos.user_id == "user-1"


async def test_update_position_whitelist(store, make_position):
    await store.insert_position(make_position())
    await store.update_position("pos-1", status=PositionStatus.EXITING, pending_tx_hash="0xabc")
    pos = await store.get_position("pos-1")
    assert pos.status is PositionStatus.EXITING
    assert pos.updated_at is not None
    with pytest.raises(ValueError):
        await store.update_position("pos-1", owner_identity="someone-else")


async def test_list_positions_by_status(store, make_position):
    await store.insert_position(make_position(id="a"))
    await store.insert_position(make_position(id="b", status=PositionStatus.EXITED))
    await store.insert_position(make_position(id="c", status=PositionStatus.FAILED))
    ids = [p.id for p in await store.list_positions([PositionStatus.HOLDING, PositionStatus.FAILED])]
    assert sorted(ids) == ["a", "c"]
    assert await store.list_positions([]) == []
    assert await store.get_position("missing") is None

import pytest

from life_sim.data_access.document_store import PersistenceError
from life_sim.data_access.models import Progress, RelationshipState

from tests.utils import FailingDocumentStore, make_runtime


# 测试：首次读取时按默认值惰性创建 Progress（400 金币、0 存款、单身）。
def test_progress_created_lazily_with_defaults(runtime):
    assert not runtime.profiles.has_progress("u1")

    progress = runtime.profiles.get_progress("u1")

    assert progress.money == 400
    assert progress.bank == 0
    assert progress.state == RelationshipState.SINGLE
    assert runtime.profiles.has_progress("u1")
    assert runtime.profiles.get_progress(None) is None


# 测试：白名单外的键被忽略，列表字段整体替换而不是合并。
def test_update_progress_whitelists_and_replaces_lists(runtime):
    profiles = runtime.profiles
    profiles.update_progress("u1", {"vehicles": ["bike", "car"], "likes": ["cats"]})

    changed = profiles.update_progress(
        "u1",
        {"vehicles": ["scooter"], "isAdmin": True, "likes": "not-a-list", "age": 31},
    )

    progress = profiles.ensure_progress("u1")
    assert changed is True
    assert progress.vehicles == ["scooter"]
    assert progress.likes == ["cats"]
    assert progress.age == 31
    assert "isAdmin" not in progress.model_dump(by_alias=True)
    assert profiles.update_progress(None, {"age": 1}) is False
    assert profiles.update_progress("u1", ["age", 1]) is False


# 测试：patch 中的金额先规范化（向下取整、负数截断为 0）再经账本记录。
def test_update_progress_money_goes_through_ledger(runtime):
    runtime.profiles.update_progress("u1", {"money": 123.9, "bank": -5})

    progress = runtime.profiles.ensure_progress("u1")
    assert (progress.money, progress.bank) == (123, 0)
    last = runtime.ledger.movements_for("u1")[-1]
    assert last.reason == "progress"
    assert last.delta == 123 - 400


# 测试：add_money 的结果不低于 0，零增量不产生流水。
def test_add_money_clamps_and_skips_zero(runtime):
    assert runtime.profiles.add_money("u1", -1000, "fine") == 0
    assert runtime.profiles.add_money("u1", 0, "noop") is None

    reasons = [m.reason for m in runtime.ledger.movements_for("u1")]
    assert reasons == ["fine"]
    assert runtime.ledger.movements_for("u1")[-1].delta == -400


def test_owned_vehicles_are_deduplicated(runtime):
    assert runtime.profiles.add_owned_vehicle("u1", "bike") is True
    assert runtime.profiles.add_owned_vehicle("u1", "bike") is False
    assert runtime.profiles.add_owned_vehicle("u1", None) is False
    assert runtime.profiles.ensure_progress("u1").vehicles == ["bike"]


def test_register_agent_marks_bot_once(runtime):
    first = runtime.profiles.register_agent("B1", name="Ana López", money=250)
    again = runtime.profiles.register_agent("B1", name="Other", money=999)

    assert first is again
    assert first.is_bot is True
    assert first.name == "Ana López"
    assert first.money == 250


@pytest.mark.asyncio
# 测试：登出保存会等待主文档与账本都落盘，写入的余额可被重新读出。
async def test_save_money_and_flush_persists_both_documents(runtime):
    await runtime.profiles.save_money_and_flush("u1", 321, 9)

    brain = await runtime.store.load("brain")
    ledger = await runtime.store.load("ledger")
    assert Progress.model_validate(brain["progress"]["u1"]).money == 321
    assert ledger["users"]["u1"]["lastMoney"] == 321
    assert ledger["movements"][-1]["reason"] == "logout-save"


@pytest.mark.asyncio
# 测试：存储写入失败时 save_money_and_flush 向调用方抛出 PersistenceError。
async def test_save_money_and_flush_surfaces_failures():
    runtime = make_runtime(store=FailingDocumentStore())

    with pytest.raises(PersistenceError):
        await runtime.profiles.save_money_and_flush("u1", 10)


@pytest.mark.asyncio
# 测试：旧存档缺少的字段在读取时按默认值回填，未知字段原样保留。
async def test_progress_backfilled_on_read(runtime):
    await runtime.store.save(
        "brain",
        {"progress": {"u1": {"money": 55, "legacyFlag": 1}}, "users": {}},
    )
    await runtime.database.load()

    progress = runtime.profiles.ensure_progress("u1")
    assert progress.money == 55
    assert progress.bank == 0
    assert progress.vehicles == []
    assert progress.model_dump(by_alias=True)["legacyFlag"] == 1

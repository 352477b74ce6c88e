import numpy as np
import pytest

from life_sim.core.agents import ExplorationGrid
from life_sim.data_access.models import AgentRole, Bank, Factory, House, RelationshipState, Shop
from life_sim.utils.settings import WorldParameters

from tests.utils import FakeClock, join, make_runtime


def _place(agent, x, y):
    agent.x, agent.y = x, y
    agent.vx = agent.vy = 0.0


# 测试：打工循环 idle → go_work → work → go_bank → idle，存款经账本入账。
def test_work_cycle_deposits_wage(runtime):
    runtime.registry.set_world_structures(
        [Factory(id="F1", x=0, y=0, w=10, h=10)], [Bank(id="K1", x=0, y=0, w=10, h=10)]
    )
    agent = runtime.agents.ensure_agents(1)[0]
    _place(agent, 5, 5)

    runtime.agents.tick_server_agents(0.0)
    assert agent.target_role == AgentRole.WORK
    assert agent.working_until == 6.0

    runtime.agents.tick_server_agents(6.0)
    assert agent.target_role == AgentRole.IDLE
    assert agent.money == 420
    assert agent.next_work_at == 51.0
    assert runtime.profiles.ensure_progress(agent.id).money == 420
    assert runtime.ledger.movements_for(agent.id)[-1].reason == "agent-wage"

    runtime.agents.tick_server_agents(20.0)
    assert agent.target_role == AgentRole.IDLE


# 测试：到店购物从代理余额扣款、计入收银箱，冷却期内不再购买。
def test_shop_purchase_respects_cooldown(runtime):
    runtime.profiles.add_shop("owner", Shop(id="S1", x=0, y=0, w=40, h=40, ownerId="owner", price=5))
    agent = runtime.agents.ensure_agents(1)[0]

    for now in (1000.0, 1100.0):
        _place(agent, 20, 20)
        agent.target_x, agent.target_y = 20.0, 20.0
        agent.target_role = AgentRole.GO_SHOP
        agent.shop_target_id = "S1"
        runtime.agents.tick_server_agents(now)

    assert agent.money == 395
    assert agent.last_purchase_at == 1000.0
    assert runtime.registry.find_shop("S1").cashbox == 5
    assert runtime.ledger.movements_for(agent.id)[-1].reason == "shop-purchase:S1"


# 测试：已婚且余额足够的代理买下最近的空闲房屋，并退掉原来租住的房屋。
def test_paired_agent_buys_nearest_house(runtime):
    registry = runtime.registry
    registry.add_global_house(House(id="H1", x=0, y=0, w=40, h=40))
    agent = runtime.agents.ensure_agents(1)[0]
    registry.add_global_house(House(id="H2", x=1000, y=1000, w=40, h=40))
    registry.add_global_house(House(id="H3", x=100, y=0, w=40, h=40))
    assert registry.find_house("H1").rented_by == agent.id

    agent.state = RelationshipState.PAIRED
    agent.money = runtime.profiles.set_money(agent.id, 5000).money
    _place(agent, 110, 10)
    runtime.agents.tick_server_agents(0.0)
    runtime.agents.tick_server_agents(1.0)

    assert agent.owns_house is True
    assert agent.money == 2000
    assert registry.find_house("H3").owner_id == agent.id
    assert registry.find_house("H1").rented_by is None
    assert registry.find_house("H2").is_available
    assert [h.id for h in runtime.profiles.ensure_progress(agent.id).houses] == ["H3"]
    reasons = [m.reason for m in runtime.ledger.movements_for(agent.id)]
    assert reasons.count("house-buy:H3") == 1


def test_single_agent_never_buys(runtime):
    runtime.registry.add_global_house(House(id="H1", x=0, y=0, w=40, h=40))
    runtime.registry.add_global_house(House(id="H2", x=200, y=0, w=40, h=40))
    agent = runtime.agents.ensure_agents(1)[0]
    agent.money = runtime.profiles.set_money(agent.id, 9000).money

    runtime.agents.tick_server_agents(0.0)

    assert agent.owns_house is False
    assert registry_owners(runtime) == []


def registry_owners(runtime):
    return [h.owner_id for h in runtime.registry.houses() if h.owner_id]


# 测试：代理补齐时依次租下空闲房屋并带上姓名首字母标记，重复补齐不会新增代理。
def test_ensure_agents_assigns_rentals_once(runtime):
    for i in range(2):
        runtime.registry.add_global_house(House(id=f"H{i}", x=i * 100, y=0, w=40, h=40))

    created = runtime.agents.ensure_agents(3)
    assert [a.id for a in created] == ["B1", "B2", "B3"]
    renters = {h.rented_by for h in runtime.registry.houses()}
    assert renters == {"B1", "B2"}
    assert all(h.marker_initial for h in runtime.registry.houses())
    assert all(runtime.profiles.ensure_progress(a.id).is_bot for a in created)

    assert runtime.agents.ensure_agents(3) == []
    assert len(runtime.world.bots()) == 3


@pytest.mark.asyncio
# 测试：重启后已租房的代理不会再租第二套房。
async def test_restart_does_not_double_rent(runtime):
    runtime.registry.add_global_house(House(id="H1", x=0, y=0, w=40, h=40))
    runtime.agents.ensure_agents(1)
    runtime.registry.add_global_house(House(id="H2", x=300, y=0, w=40, h=40))
    await runtime.database.flush()

    restarted = make_runtime(store=runtime.store)
    await restarted.start(start_timers=False)
    restarted.agents.ensure_agents(1)

    assert restarted.registry.find_house("H1").rented_by == "B1"
    assert restarted.registry.find_house("H2").is_available
    await restarted.shutdown()


def test_exploration_grid_resets_after_full_pass():
    grid = ExplorationGrid(4, 3, 400, 300)
    for iy in range(3):
        for ix in range(4):
            assert grid.completed_passes == 0
            grid.mark(ix * 100 + 50, iy * 100 + 50)

    assert grid.completed_passes == 1
    assert grid.visited_count == 0
    assert grid.sector_at(-10, 999) == (0, 2)

    grid.mark(50, 50)
    rng = np.random.default_rng(0)
    for _ in range(20):
        x, y = grid.next_target(rng)
        assert not grid.is_visited(*grid.sector_at(x, y))


# 测试：空闲代理在小网格上巡游，有限步内访问完全部扇区且不越界。
def test_idle_agents_explore_whole_grid():
    clock = FakeClock(0.0)
    runtime = make_runtime(
        clock=clock,
        world=WorldParameters(width=400, height=300, explore_sectors_x=4, explore_sectors_y=3),
    )
    agents = runtime.agents.ensure_agents(3)

    for _ in range(2000):
        clock.advance(0.12)
        runtime.agents.move_players(0.12, clock.now)
        if runtime.agents.grid.completed_passes:
            break

    assert runtime.agents.grid.completed_passes >= 1
    for agent in agents:
        assert 0 <= agent.x <= 400 and 0 <= agent.y <= 300


@pytest.mark.asyncio
# 测试：人类玩家 3 秒未上报后开始自动漫游，近期上报过的玩家保持不动。
async def test_idle_humans_drift_after_timeout(runtime, clock):
    await join(runtime, "ana", x=200, y=200)
    await join(runtime, "bob", x=400, y=400)
    ana = runtime.world.get("ana")
    bob = runtime.world.get("bob")
    ana.last_update_from_client = clock.now - 10

    for _ in range(10):
        clock.advance(0.12)
        bob.last_update_from_client = clock.now
        runtime.agents.move_players(0.12, clock.now)

    assert (ana.x, ana.y) != (200, 200)
    assert (bob.x, bob.y) == (400, 400)


def test_employees_stay_at_their_shop(runtime):
    shop = Shop(id="S1", x=100, y=100, w=40, h=40, ownerId="owner")
    runtime.profiles.add_shop("owner", shop)
    employee = runtime.agents.spawn_employee(shop, "owner", employee_id="E-saved")

    for _ in range(20):
        runtime.agents.tick(0.12)

    assert employee.id == "E-saved"
    assert employee.target_role == AgentRole.EMPLOYEE
    assert abs(employee.x - 120) < 1 and abs(employee.y - 120) < 1

import sys
from pathlib import Path
import logging
import pytest
from mesa import Model

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from cpamm_abm.agents.blockchain import ChainAgent
from cpamm_abm.agents.pool import PoolAgent
from cpamm_abm.agents.token import FungibleToken
from cpamm_abm.utils.errors import (
    ArithmeticOverflow,
    DivisionByZero,
    ExternalTransferFailure,
    InsufficientShares,
    InvalidAmount,
    InvalidAsset,
    InvalidShareAmount,
)
from cpamm_abm.utils.math_helpers import get_amount_out

E = 10**18


def make_pool():
    model = Model()
    chain = ChainAgent(model)
    token0 = FungibleToken(chain, "Token0", "TK0")
    token1 = FungibleToken(chain, "Token1", "TK1")
    pool = PoolAgent(model, chain, token0.address, token1.address)
    return chain, token0, token1, pool


def add(pool, token0, token1, who, amount0, amount1):
    token0.approve(who, pool.address, amount0)
    token1.approve(who, pool.address, amount1)
    return pool.add_liquidity(who, amount0, amount1)


def swap(pool, token, who, amount_in):
    token.approve(who, pool.address, amount_in)
    return pool.simple_swap(who, token.address, amount_in)


def assert_synced(pool, token0, token1):
    assert pool.reserve0 == token0.balance_of(pool.address)
    assert pool.reserve1 == token1.balance_of(pool.address)


@pytest.fixture
def funded():
    """Pool with lp1's first deposit of (100, 100) ether-scale units."""
    chain, token0, token1, pool = make_pool()
    for lp in ("lp1", "lp2"):
        token0.mint(lp, 1000 * E)
        token1.mint(lp, 1000 * E)
    token1.mint("user", 100 * E)
    add(pool, token0, token1, "lp1", 100 * E, 100 * E)
    return chain, token0, token1, pool


def test_pool_exposes_tokens_and_starts_empty():
    chain, token0, token1, pool = make_pool()
    assert pool.token0 == token0.address
    assert pool.token1 == token1.address
    assert pool.get_reserves() == (0, 0)
    assert pool.share_supply == 0
    assert chain.get_contract(pool.address) is pool
    with pytest.raises(AttributeError):
        pool.token0 = "0xdead"


def test_pool_rejects_identical_tokens():
    model = Model()
    chain = ChainAgent(model)
    token = FungibleToken(chain, "Token0", "TK0")
    with pytest.raises(ValueError):
        PoolAgent(model, chain, token.address, token.address)


def test_first_deposit_mints_sqrt_shares(funded):
    chain, token0, token1, pool = funded
    assert pool.balance_of("lp1") == 100 * E
    assert pool.share_supply == 100 * E
    assert pool.get_reserves() == (100 * E, 100 * E)
    assert_synced(pool, token0, token1)


def test_first_deposit_small_amounts():
    chain, token0, token1, pool = make_pool()
    token0.mint("lp", 1)
    token1.mint("lp", 1)
    assert add(pool, token0, token1, "lp", 1, 1) == 1
    assert pool.balance_of("lp") == 1


def test_first_deposit_scenario_plain_units():
    chain, token0, token1, pool = make_pool()
    token0.mint("lp", 1000)
    token1.mint("lp", 1000)
    assert add(pool, token0, token1, "lp", 100, 100) == 100
    assert add(pool, token0, token1, "lp", 100, 100) == 100
    assert pool.share_supply == 200


def test_second_deposit_is_proportional(funded):
    chain, token0, token1, pool = funded
    supply = pool.share_supply
    reserve0 = pool.reserve0
    shares = add(pool, token0, token1, "lp2", 100 * E, 100 * E)
    assert shares == (100 * E * supply) // reserve0
    assert pool.balance_of("lp2") == shares
    assert_synced(pool, token0, token1)


def test_proportional_deposit_law():
    chain, token0, token1, pool = make_pool()
    token0.mint("lp", 10**6)
    token1.mint("lp", 10**6)
    first = add(pool, token0, token1, "lp", 100, 200)
    assert first == 141
    # k = 3 times the reserves mints k times the supply
    assert add(pool, token0, token1, "lp", 300, 600) == 3 * first


def test_imbalanced_deposit_mints_for_scarcer_side(funded):
    chain, token0, token1, pool = funded
    shares = add(pool, token0, token1, "lp2", 50 * E, 100 * E)
    assert shares == 50 * E
    # the excess token1 stays in the pool and is folded into reserves
    assert pool.get_reserves() == (150 * E, 200 * E)


def test_swap_token1_for_token0(funded):
    chain, token0, token1, pool = funded
    amount_in = 10 * E
    reserve_in = pool.reserve1
    reserve_out = pool.reserve0
    expected = pool.get_amount_out(amount_in, reserve_in, reserve_out)

    amount_out = swap(pool, token1, "user", amount_in)

    assert amount_out == expected
    assert token0.balance_of("user") == expected
    assert token1.balance_of("user") == 90 * E
    assert pool.get_reserves() == (100 * E - expected, 110 * E)
    assert_synced(pool, token0, token1)


def test_swap_token0_for_token1(funded):
    chain, token0, token1, pool = funded
    token0.mint("user", 5 * E)
    amount_out = swap(pool, token0, "user", 5 * E)
    assert amount_out == get_amount_out(5 * E, 100 * E, 100 * E)
    assert token1.balance_of("user") == 100 * E + amount_out
    assert_synced(pool, token0, token1)


def test_swaps_do_not_decrease_constant_product(funded):
    chain, token0, token1, pool = funded
    token0.mint("user", 100 * E)
    k = pool.reserve0 * pool.reserve1
    for token, amount in [(token1, 10 * E), (token0, 3 * E), (token1, 1), (token0, 7 * E)]:
        swap(pool, token, "user", amount)
        new_k = pool.reserve0 * pool.reserve1
        assert new_k >= k
        k = new_k


def test_swap_emits_events(funded):
    chain, token0, token1, pool = funded
    amount_out = swap(pool, token1, "user", 10 * E)
    names = [name for name, _ in chain.get_events()]
    assert names[-2:] == ["Sync", "Swap"]
    assert chain.get_events()[-1][1]["amount_out"] == amount_out


def test_remove_liquidity_after_swap_returns_more(funded):
    chain, token0, token1, pool = funded
    swap(pool, token1, "user", 10 * E)

    balance0_before = token0.balance_of("lp1")
    balance1_before = token1.balance_of("lp1")
    shares = pool.balance_of("lp1")

    amount0, amount1 = pool.remove_liquidity("lp1", shares)

    assert token0.balance_of("lp1") > balance0_before
    assert token1.balance_of("lp1") > balance1_before
    assert token0.balance_of("lp1") == balance0_before + amount0
    assert amount1 == 110 * E
    assert pool.share_supply == 0
    assert pool.get_reserves() == (0, 0)
    assert_synced(pool, token0, token1)


def test_withdrawal_never_exceeds_proportional_share(funded):
    chain, token0, token1, pool = funded
    add(pool, token0, token1, "lp2", 33 * E, 47 * E)
    swap(pool, token1, "user", 7 * E + 3)

    for holder, shares in [("lp2", 12345678901234567), ("lp1", 3 * E + 1)]:
        supply = pool.share_supply
        reserve0, reserve1 = pool.get_reserves()
        amount0, amount1 = pool.remove_liquidity(holder, shares)
        assert amount0 * supply <= shares * reserve0
        assert amount1 * supply <= shares * reserve1
        assert_synced(pool, token0, token1)


def test_zero_amount_deposit_fails(funded):
    chain, token0, token1, pool = funded
    with pytest.raises(InvalidAmount) as exc_info:
        add(pool, token0, token1, "lp2", 0, 0)
    assert str(exc_info.value) == "ZERO_AMOUNT"
    with pytest.raises(InvalidAmount):
        add(pool, token0, token1, "lp2", 0, 5)
    with pytest.raises(InvalidAmount):
        add(pool, token0, token1, "lp2", 5, 0)


def test_negative_amount_is_out_of_range(funded):
    chain, token0, token1, pool = funded
    with pytest.raises(ArithmeticOverflow):
        pool.add_liquidity("lp2", -1, 5)
    with pytest.raises(ArithmeticOverflow):
        pool.simple_swap("user", token1.address, -5)


def test_deposit_below_rounding_threshold_fails_and_rolls_back():
    chain, token0, token1, pool = make_pool()
    token0.mint("lp", 10**7)
    token1.mint("lp", 10**7)
    assert add(pool, token0, token1, "lp", 1, 10**6) == 1000

    with pytest.raises(InvalidShareAmount) as exc_info:
        add(pool, token0, token1, "lp", 1, 1)
    assert exc_info.value.reason == "ZERO_SHARES"

    assert pool.get_reserves() == (1, 10**6)
    assert pool.share_supply == 1000
    assert token0.balance_of("lp") == 10**7 - 1
    assert token1.balance_of("lp") == 10**7 - 10**6
    assert token0.allowance("lp", pool.address) == 1


def test_failed_transfer_rolls_back_deposit(funded):
    chain, token0, token1, pool = funded
    token0.approve("lp2", pool.address, 10 * E)
    events_before = chain.get_events()

    with pytest.raises(ExternalTransferFailure) as exc_info:
        pool.add_liquidity("lp2", 10 * E, 10 * E)
    assert exc_info.value.reason == "ERC20InsufficientAllowance"

    assert token0.balance_of("lp2") == 1000 * E
    assert token0.allowance("lp2", pool.address) == 10 * E
    assert pool.get_reserves() == (100 * E, 100 * E)
    assert pool.share_supply == 100 * E
    assert chain.get_events() == events_before


def test_failing_hook_rolls_back_swap(funded):
    chain, token0, token1, pool = funded

    def reject(pool_agent, amount_in, amount_out, token_in):
        raise RuntimeError("hook failed")

    pool.on_swap = reject
    with pytest.raises(RuntimeError):
        swap(pool, token1, "user", 10 * E)
    assert token1.balance_of("user") == 100 * E
    assert token0.balance_of("user") == 0
    assert pool.get_reserves() == (100 * E, 100 * E)


def test_remove_zero_shares_fails(funded):
    chain, token0, token1, pool = funded
    shares = pool.balance_of("user")
    with pytest.raises(InvalidShareAmount) as exc_info:
        pool.remove_liquidity("user", shares)
    assert str(exc_info.value) == "ZERO SHARES"


def test_remove_from_empty_pool_is_division_by_zero():
    chain, token0, token1, pool = make_pool()
    with pytest.raises(DivisionByZero):
        pool.remove_liquidity("lp", 1)


def test_remove_more_than_held_fails(funded):
    chain, token0, token1, pool = funded
    with pytest.raises(InsufficientShares):
        pool.remove_liquidity("lp2", 1)
    with pytest.raises(InsufficientShares):
        pool.remove_liquidity("lp1", 100 * E + 1)
    assert pool.balance_of("lp1") == 100 * E
    assert pool.get_reserves() == (100 * E, 100 * E)


def test_zero_input_swap_fails(funded):
    chain, token0, token1, pool = funded
    with pytest.raises(InvalidAmount) as exc_info:
        swap(pool, token1, "user", 0)
    assert str(exc_info.value) == "ZERO_INPUT"


def test_swap_with_unknown_token_fails(funded):
    chain, token0, token1, pool = funded
    invalid = FungibleToken(chain, "InvalidToken", "IVT")
    invalid.mint("user", E)
    invalid.approve("user", pool.address, E)
    with pytest.raises(InvalidAsset) as exc_info:
        pool.simple_swap("user", invalid.address, E)
    assert str(exc_info.value) == "INVALID_TOKEN"


def test_swap_on_empty_pool_is_division_by_zero():
    chain, token0, token1, pool = make_pool()
    token0.mint("user", 10)
    with pytest.raises(DivisionByZero):
        swap(pool, token0, "user", 10)
    assert token0.balance_of("user") == 10


def test_donation_is_absorbed_at_next_sync(funded):
    chain, token0, token1, pool = funded
    token0.transfer("lp2", pool.address, 5 * E)
    assert pool.reserve0 == 100 * E

    swap(pool, token1, "user", E)
    assert_synced(pool, token0, token1)
    assert pool.reserve0 > 100 * E


def test_drained_pool_accepts_fresh_first_deposit():
    chain, token0, token1, pool = make_pool()
    token0.mint("lp", 1000)
    token1.mint("lp", 1000)
    add(pool, token0, token1, "lp", 100, 100)
    assert pool.remove_liquidity("lp", 100) == (100, 100)
    assert pool.share_supply == 0
    assert pool.get_reserves() == (0, 0)

    assert add(pool, token0, token1, "lp", 4, 9) == 6
    assert pool.get_reserves() == (4, 9)


def test_reentrant_swap_prices_against_stale_reserves(funded):
    chain, token0, token1, pool = funded
    state = {"entered": False, "inner_out": None}

    def reenter(token, frm, to, amount):
        if to == pool.address and frm == "user" and not state["entered"]:
            state["entered"] = True
            state["inner_out"] = pool.simple_swap("user", token1.address, 5 * E)

    token1.approve("user", pool.address, 15 * E)
    token1.on_transfer = reenter
    outer_out = pool.simple_swap("user", token1.address, 10 * E)

    # both legs were priced against the reserves cached before either input landed
    assert state["inner_out"] == get_amount_out(5 * E, 100 * E, 100 * E)
    assert outer_out == get_amount_out(10 * E, 100 * E, 100 * E)
    assert pool.get_reserves() == (100 * E - outer_out - state["inner_out"], 115 * E)
    assert_synced(pool, token0, token1)


def test_reentrant_deposit_mints_against_reserves_after_the_pulls(funded):
    chain, token0, token1, pool = funded
    state = {"inner_out": None}

    def reenter(token, frm, to, amount):
        if to == pool.address and frm == "lp2":
            state["inner_out"] = swap(pool, token1, "user", 5 * E)

    token0.on_transfer = reenter
    shares = add(pool, token0, token1, "lp2", 10 * E, 10 * E)

    # the nested swap synced while lp2's token0 was already in custody
    inner_out = state["inner_out"]
    assert inner_out == get_amount_out(5 * E, 100 * E, 100 * E)
    assert shares == min(
        10 * E * 100 * E // (110 * E - inner_out),
        10 * E * 100 * E // (105 * E),
    )
    assert shares < 10 * E
    assert pool.share_supply == 100 * E + shares
    assert pool.get_reserves() == (110 * E - inner_out, 115 * E)
    assert_synced(pool, token0, token1)


def test_hooks_receive_results(funded):
    chain, token0, token1, pool = funded
    seen = []
    pool.on_deposit = lambda p, who, shares: seen.append(("deposit", who, shares))
    pool.on_withdraw = lambda p, who, amounts: seen.append(("withdraw", who, amounts))

    shares = add(pool, token0, token1, "lp2", 10 * E, 10 * E)
    amounts = pool.remove_liquidity("lp2", shares)
    assert seen == [("deposit", "lp2", shares), ("withdraw", "lp2", amounts)]


def test_operations_are_logged(funded, caplog):
    chain, token0, token1, pool = funded
    caplog.set_level(logging.INFO, logger="cpamm_abm.agents.pool")
    swap(pool, token1, "user", E)
    assert any("swapped" in rec.getMessage() for rec in caplog.records)

from mesa import Agent
from typing import Optional, Callable
import logging

import numpy as np

from cpamm_abm.agents.pool import PoolAgent
from cpamm_abm.utils.errors import PoolError

logger = logging.getLogger(__name__)


def _record(model, key: str) -> None:
    """Bump a counter in ``model.metrics`` when the model keeps one."""
    metrics = getattr(model, "metrics", None)
    if metrics is not None:
        metrics[key] = metrics.get(key, 0) + 1


class LiquidityProviderAgent(Agent):
    """
    Agent that deposits a fixed pair of amounts once and may later withdraw.

    Attributes:
        pool (PoolAgent): Pool to provide liquidity to.
        address (str): Chain address of the provider.
        deposit0 (int): Amount of token0 deposited on the first step.
        deposit1 (int): Amount of token1 deposited on the first step.
        withdraw_probability (float): Chance per step of burning part of the position.
        withdraw_fraction (float): Fraction of held shares burned per withdrawal.
        has_deposited (bool): Whether the initial deposit has been attempted.
        on_action (Callable): Optional hook ``(agent, action, result)``.
    """

    def __init__(
        self,
        model,
        pool: PoolAgent,
        balance0: int = 0,
        balance1: int = 0,
        deposit0: int = 0,
        deposit1: int = 0,
        withdraw_probability: float = 0.0,
        withdraw_fraction: float = 0.5,
        seed: Optional[int] = None,
        on_action: Optional[Callable] = None,
    ):
        super().__init__(model)
        self.pool = pool
        self.address = pool.chain.new_address()
        self.deposit0 = int(deposit0)
        self.deposit1 = int(deposit1)
        self.withdraw_probability = float(withdraw_probability)
        self.withdraw_fraction = float(withdraw_fraction)
        self.has_deposited = False
        self.on_action = on_action
        self._rng = np.random.default_rng(seed)

        token0 = pool.chain.get_contract(pool.token0)
        token1 = pool.chain.get_contract(pool.token1)
        if balance0:
            token0.mint(self.address, int(balance0))
        if balance1:
            token1.mint(self.address, int(balance1))
        self._token0 = token0
        self._token1 = token1

    def get_shares(self) -> int:
        return self.pool.balance_of(self.address)

    def deposit(self) -> int:
        """Approve the pool and deposit the configured amounts. Returns shares minted."""
        self._token0.approve(self.address, self.pool.address, self.deposit0)
        self._token1.approve(self.address, self.pool.address, self.deposit1)
        try:
            shares = self.pool.add_liquidity(self.address, self.deposit0, self.deposit1)
        except PoolError as exc:
            logger.debug("%s deposit rejected: %s", self.address, exc.reason)
            _record(self.model, "failed_deposits")
            return 0

        _record(self.model, "deposits")
        if self.on_action:
            self.on_action(self, "deposit", shares)
        return shares

    def withdraw(self) -> tuple:
        """Burn ``withdraw_fraction`` of held shares. Returns amounts received."""
        shares = int(self.get_shares() * self.withdraw_fraction)
        if shares <= 0:
            logger.debug("%s has no shares to withdraw", self.address)
            return 0, 0
        try:
            amounts = self.pool.remove_liquidity(self.address, shares)
        except PoolError as exc:
            logger.debug("%s withdrawal rejected: %s", self.address, exc.reason)
            _record(self.model, "failed_withdrawals")
            return 0, 0

        _record(self.model, "withdrawals")
        if self.on_action:
            self.on_action(self, "withdraw", amounts)
        return amounts

    def step(self):
        """Deposit on the first step, then withdraw part of the position at random."""
        if not self.has_deposited:
            self.has_deposited = True
            self.deposit()
        elif self._rng.random() < self.withdraw_probability:
            self.withdraw()


class TraderAgent(Agent):
    """
    Agent that swaps a random amount of a random pool token each step.

    Attributes:
        pool (PoolAgent): Pool to trade against.
        address (str): Chain address of the trader.
        max_swap (int): Upper bound (inclusive) of the swap size.
        swap_probability (float): Chance per step of attempting a swap.
        trades (list): Completed swaps as ``(token_in, amount_in, amount_out)``.
    """

    def __init__(
        self,
        model,
        pool: PoolAgent,
        balance0: int = 0,
        balance1: int = 0,
        max_swap: int = 10,
        swap_probability: float = 1.0,
        seed: Optional[int] = None,
    ):
        super().__init__(model)
        if max_swap < 1:
            raise ValueError("max_swap must be at least 1")
        self.pool = pool
        self.address = pool.chain.new_address()
        self.max_swap = int(max_swap)
        self.swap_probability = float(swap_probability)
        self.trades = []
        self._rng = np.random.default_rng(seed)

        self._tokens = [pool.chain.get_contract(pool.token0), pool.chain.get_contract(pool.token1)]
        for token, balance in zip(self._tokens, (balance0, balance1)):
            if balance:
                token.mint(self.address, int(balance))

    def swap(self, token_index: int, amount_in: int) -> int:
        """Approve and swap ``amount_in`` of token0 (index 0) or token1 (index 1)."""
        token = self._tokens[token_index]
        token.approve(self.address, self.pool.address, amount_in)
        try:
            amount_out = self.pool.simple_swap(self.address, token.address, amount_in)
        except PoolError as exc:
            logger.debug("%s swap rejected: %s", self.address, exc.reason)
            _record(self.model, "failed_swaps")
            return 0

        self.trades.append((token.address, amount_in, amount_out))
        _record(self.model, "swaps")
        return amount_out

    def step(self):
        """Swap a random amount in a random direction."""
        if self._rng.random() >= self.swap_probability:
            return
        token_index = int(self._rng.integers(0, 2))
        amount_in = int(self._rng.integers(1, self.max_swap, endpoint=True))
        self.swap(token_index, amount_in)

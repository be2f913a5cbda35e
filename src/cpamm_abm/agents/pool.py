from mesa import Agent
from typing import Any, Callable, Optional, Tuple
import logging

from cpamm_abm.agents.blockchain import ChainAgent
from cpamm_abm.agents.token import ShareLedger
from cpamm_abm.utils.errors import InvalidAmount, InvalidAsset, InvalidShareAmount
from cpamm_abm.utils.math_helpers import (
    checked_div,
    checked_mul,
    get_amount_out,
    isqrt,
    minimum,
    to_uint,
)

logger = logging.getLogger(__name__)


class PoolAgent(Agent):
    """
    Two-token constant-product pool with proportional liquidity shares.

    The pool holds its tokens at ``address`` on the chain. ``reserve0`` and
    ``reserve1`` cache those balances and are re-read from the tokens at the
    end of every mutating call. Each entry point runs inside
    ``ChainAgent.atomic``, so a failure anywhere leaves no trace.

    Attributes:
        chain (ChainAgent): Ledger host resolving token addresses.
        address (str): Custody address of the pool.
        reserve0 (int): Cached balance of token0 held by the pool.
        reserve1 (int): Cached balance of token1 held by the pool.
        shares (ShareLedger): Share token minted to liquidity providers.
        on_swap (Callable): Optional hook for swap events.
        on_deposit (Callable): Optional hook for deposit events.
        on_withdraw (Callable): Optional hook for withdraw events.
    """

    get_amount_out = staticmethod(get_amount_out)

    def __init__(
        self,
        model,
        chain: ChainAgent,
        token0: str,
        token1: str,
        address: Optional[str] = None,
        on_swap: Optional[Callable] = None,
        on_deposit: Optional[Callable] = None,
        on_withdraw: Optional[Callable] = None,
    ):
        """Initialize a pool for two registered token addresses."""
        super().__init__(model)
        if token0 == token1:
            raise ValueError("Pool tokens must be distinct")

        self.chain = chain
        self.address = address if address is not None else chain.new_address()
        self._token0 = token0
        self._token1 = token1
        self._asset0 = chain.get_contract(token0)
        self._asset1 = chain.get_contract(token1)

        self.reserve0 = 0
        self.reserve1 = 0
        self.shares = ShareLedger(
            chain,
            owner=self.address,
            name=f"{self._asset0.symbol}-{self._asset1.symbol} Share",
            symbol=f"{self._asset0.symbol}-{self._asset1.symbol}",
        )
        chain.register_contract(self.address, self)

        self.on_swap = on_swap
        self.on_deposit = on_deposit
        self.on_withdraw = on_withdraw

    @property
    def token0(self) -> str:
        return self._token0

    @property
    def token1(self) -> str:
        return self._token1

    @property
    def share_supply(self) -> int:
        return self.shares.total_supply()

    def balance_of(self, holder: Any) -> int:
        """Return the share balance of a holder."""
        return self.shares.balance_of(holder)

    def get_reserves(self) -> Tuple[int, int]:
        """Return cached reserves of token0 and token1."""
        return self.reserve0, self.reserve1

    def snapshot_state(self) -> Tuple[int, int]:
        return self.reserve0, self.reserve1

    def restore_state(self, state: Tuple[int, int]) -> None:
        self.reserve0, self.reserve1 = state

    def sync(self) -> None:
        """Overwrite the cached reserves with the pool's actual token balances."""
        self.reserve0 = self._asset0.balance_of(self.address)
        self.reserve1 = self._asset1.balance_of(self.address)
        self.chain.log_event("Sync", {"pool": self.address, "reserve0": self.reserve0, "reserve1": self.reserve1})
        logger.debug("%s synced reserves to (%d, %d)", self, self.reserve0, self.reserve1)

    def add_liquidity(self, caller: Any, amount0: int, amount1: int) -> int:
        """
        Deposit both tokens and receive pool shares.

        The first deposit mints ``isqrt(amount0 * amount1)`` shares. Later
        deposits mint in proportion to the scarcer side relative to the
        current reserves, so an unbalanced deposit never over-mints.

        Args:
            caller (Any): Address providing the tokens; must have approved the pool.
            amount0 (int): Amount of token0.
            amount1 (int): Amount of token1.

        Returns:
            int: Amount of shares minted to ``caller``.
        """
        to_uint(amount0, "amount0")
        to_uint(amount1, "amount1")
        if amount0 == 0 or amount1 == 0:
            raise InvalidAmount("ZERO_AMOUNT")

        with self.chain.atomic("addLiquidity"):
            self._asset0.transfer_from(self.address, caller, self.address, amount0)
            self._asset1.transfer_from(self.address, caller, self.address, amount1)

            supply = self.share_supply
            if supply == 0:
                shares = isqrt(checked_mul(amount0, amount1))
            else:
                shares = minimum(
                    checked_div(checked_mul(amount0, supply), self.reserve0),
                    checked_div(checked_mul(amount1, supply), self.reserve1),
                )
            if shares == 0:
                raise InvalidShareAmount("ZERO_SHARES")

            self.shares.issue(self.address, caller, shares)
            self.sync()

            self.chain.log_event(
                "Mint", {"pool": self.address, "sender": caller, "amount0": amount0, "amount1": amount1, "shares": shares}
            )
            if self.on_deposit:
                self.on_deposit(self, caller, shares)

        logger.info("%s deposited (%d, %d) for %d shares", caller, amount0, amount1, shares)
        return shares

    def remove_liquidity(self, caller: Any, shares: int) -> Tuple[int, int]:
        """
        Burn shares and withdraw the proportional amounts of both tokens.

        Args:
            caller (Any): Share holder.
            shares (int): Amount of shares to burn.

        Returns:
            Tuple[int, int]: Amounts of token0 and token1 paid out, rounded down.
        """
        to_uint(shares, "shares")
        if shares == 0:
            raise InvalidShareAmount("ZERO SHARES")

        with self.chain.atomic("removeLiquidity"):
            supply = self.share_supply
            amount0 = checked_div(checked_mul(shares, self.reserve0), supply)
            amount1 = checked_div(checked_mul(shares, self.reserve1), supply)

            self.shares.redeem(self.address, caller, shares)
            self._asset0.transfer(self.address, caller, amount0)
            self._asset1.transfer(self.address, caller, amount1)
            self.sync()

            self.chain.log_event(
                "Burn", {"pool": self.address, "sender": caller, "amount0": amount0, "amount1": amount1, "shares": shares}
            )
            if self.on_withdraw:
                self.on_withdraw(self, caller, (amount0, amount1))

        logger.info("%s burned %d shares for (%d, %d)", caller, shares, amount0, amount1)
        return amount0, amount1

    def simple_swap(self, caller: Any, token_in: str, amount_in: int) -> int:
        """
        Swap ``amount_in`` of ``token_in`` for the other pool token.

        The output is priced against the reserves cached on entry, before the
        input transfer lands.

        Args:
            caller (Any): Trader address; must have approved the pool.
            token_in (str): Address of the input token.
            amount_in (int): Amount of input token.

        Returns:
            int: Amount of the other token sent to ``caller``.
        """
        to_uint(amount_in, "amount_in")
        if amount_in == 0:
            raise InvalidAmount("ZERO_INPUT")
        if token_in != self._token0 and token_in != self._token1:
            raise InvalidAsset("INVALID_TOKEN")

        with self.chain.atomic("simpleSwap"):
            if token_in == self._token0:
                asset_in, asset_out = self._asset0, self._asset1
                reserve_in, reserve_out = self.reserve0, self.reserve1
            else:
                asset_in, asset_out = self._asset1, self._asset0
                reserve_in, reserve_out = self.reserve1, self.reserve0

            asset_in.transfer_from(self.address, caller, self.address, amount_in)
            amount_out = get_amount_out(amount_in, reserve_in, reserve_out)
            asset_out.transfer(self.address, caller, amount_out)
            self.sync()

            self.chain.log_event(
                "Swap",
                {"pool": self.address, "sender": caller, "token_in": token_in, "amount_in": amount_in, "amount_out": amount_out},
            )
            if self.on_swap:
                self.on_swap(self, amount_in, amount_out, token_in)

        logger.info("%s swapped %d of %s for %d", caller, amount_in, asset_in.symbol, amount_out)
        return amount_out

    def __repr__(self) -> str:
        return f"PoolAgent({self._asset0.symbol}/{self._asset1.symbol}@{self.address})"

    def step(self):
        """Pools are reactive; no internal logic on each step."""
        pass

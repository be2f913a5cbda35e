from typing import Any, Callable, Optional

from cpamm_abm.agents.blockchain import ChainAgent
from cpamm_abm.utils.errors import ExternalTransferFailure, InsufficientShares
from cpamm_abm.utils.math_helpers import to_uint


class FungibleToken:
    """
    ERC-20 style token whose balances are stored on a ChainAgent.

    Every operation takes the acting address explicitly as ``caller``.

    Attributes:
        chain (ChainAgent): Ledger holding balances, allowances and supply.
        name (str): Human-readable token name.
        symbol (str): Ticker symbol.
        address (str): Address the token is registered under.
        on_transfer (Callable): Optional hook ``(token, frm, to, amount)`` run after a balance moves.
    """

    def __init__(
        self,
        chain: ChainAgent,
        name: str,
        symbol: str,
        address: Optional[str] = None,
        on_transfer: Optional[Callable[["FungibleToken", Any, Any, int], None]] = None,
    ):
        self.chain = chain
        self.name = name
        self.symbol = symbol
        self.address = address if address is not None else chain.new_address()
        self.on_transfer = on_transfer
        chain.register_contract(self.address, self)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.symbol}@{self.address})"

    def balance_of(self, owner: Any) -> int:
        return self.chain.get_token_balance(self.address, owner)

    def total_supply(self) -> int:
        return self.chain.get_token_supply(self.address)

    def allowance(self, owner: Any, spender: Any) -> int:
        return self.chain.get_allowance(self.address, owner, spender)

    def mint(self, to: Any, amount: int) -> None:
        """Create ``amount`` new tokens for ``to``."""
        to_uint(amount, "amount")
        self.chain.adjust_token_supply(self.address, amount)
        self.chain.credit(self.address, to, amount)
        self.chain.log_event("Transfer", {"token": self.address, "from": None, "to": to, "amount": amount})

    def approve(self, caller: Any, spender: Any, amount: int) -> bool:
        to_uint(amount, "amount")
        self.chain.set_allowance(self.address, caller, spender, amount)
        self.chain.log_event(
            "Approval", {"token": self.address, "owner": caller, "spender": spender, "amount": amount}
        )
        return True

    def transfer(self, caller: Any, to: Any, amount: int) -> bool:
        """Move ``amount`` from ``caller`` to ``to``."""
        self._move(caller, to, amount)
        return True

    def transfer_from(self, caller: Any, frm: Any, to: Any, amount: int) -> bool:
        """Move ``amount`` from ``frm`` to ``to`` against ``caller``'s allowance."""
        to_uint(amount, "amount")
        allowed = self.allowance(frm, caller)
        if allowed < amount:
            raise ExternalTransferFailure("ERC20InsufficientAllowance")
        self.chain.set_allowance(self.address, frm, caller, allowed - amount)
        self._move(frm, to, amount)
        return True

    def _move(self, frm: Any, to: Any, amount: int) -> None:
        to_uint(amount, "amount")
        if not self.chain.debit(self.address, frm, amount):
            raise ExternalTransferFailure("ERC20InsufficientBalance")
        self.chain.credit(self.address, to, amount)
        self.chain.log_event("Transfer", {"token": self.address, "from": frm, "to": to, "amount": amount})
        if self.on_transfer:
            self.on_transfer(self, frm, to, amount)


class ShareLedger(FungibleToken):
    """
    Pool share token. Only its owner (the pool's address) may issue or redeem.

    Supply changes go through ``issue``/``redeem``, which take the caller;
    the unrestricted ``mint`` inherited from ``FungibleToken`` is refused.
    """

    def __init__(self, chain: ChainAgent, owner: Any, name: str = "Pool Share", symbol: str = "SHARE"):
        super().__init__(chain, name=name, symbol=symbol)
        self.owner = owner

    def _check_owner(self, caller: Any) -> None:
        if caller != self.owner:
            raise PermissionError(f"{caller} may not issue or redeem {self.symbol}")

    def mint(self, to: Any, amount: int) -> None:
        raise PermissionError(f"{self.symbol} supply changes only through issue/redeem")

    def issue(self, caller: Any, to: Any, amount: int) -> None:
        """Create ``amount`` shares for ``to``."""
        self._check_owner(caller)
        super().mint(to, amount)

    def redeem(self, caller: Any, frm: Any, amount: int) -> None:
        """Destroy ``amount`` shares held by ``frm``."""
        self._check_owner(caller)
        to_uint(amount, "amount")
        if not self.chain.debit(self.address, frm, amount):
            raise InsufficientShares()
        self.chain.adjust_token_supply(self.address, -amount)
        self.chain.log_event("Transfer", {"token": self.address, "from": frm, "to": None, "amount": amount})

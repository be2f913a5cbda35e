from mesa import Agent
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
import logging
import threading

from cpamm_abm.utils.errors import PoolError
from cpamm_abm.utils.math_helpers import checked_add, checked_sub

logger = logging.getLogger(__name__)


class Transaction:
    """
    A call queued on the chain for execution at the next block.

    Attributes:
        tx_id (int): Unique identifier for the transaction.
        sender (Any): Address submitting the call.
        data_fn (Callable): Execution logic, called as ``data_fn(sender, payload, chain)``.
        payload (Any): Optional data passed to ``data_fn``.
        submit_block (int): Block number at which it was submitted.
        included_block (Optional[int]): Block in which it ran.
        executed (bool): Whether the call committed.
        reverted_reason (Optional[str]): Failure tag when the call reverted.
        return_value (Any): Return data from execution.
    """

    def __init__(
        self,
        tx_id: int,
        sender: Any,
        data_fn: Callable[[Any, Any, "ChainAgent"], Any],
        payload: Any = None,
        submit_block: int = 0,
    ):
        self.tx_id = tx_id
        self.sender = sender
        self.data_fn = data_fn
        self.payload = payload
        self.submit_block = submit_block
        self.included_block: Optional[int] = None
        self.executed: bool = False
        self.reverted_reason: Optional[str] = None
        self.return_value: Any = None


class ChainAgent(Agent):
    """
    Ledger host for token balances, contracts and events.

    Token contracts keep no balances of their own: every balance, allowance
    and supply lives here so that one snapshot covers the whole ledger.
    ``atomic`` gives each call all-or-nothing semantics and serializes
    threads through a re-entrant lock.

    Supports:
        - Deterministic address allocation
        - Contract registration
        - Token balances, allowances and supplies
        - Atomic execution with rollback
        - Per-block event logging
        - A transaction queue executed on each block
    """

    def __init__(self, model, block_time: float = 12.0):
        """Initialize the chain agent."""
        super().__init__(model)
        self.current_block: int = 0
        self.timestamp: float = 0.0
        self.block_time: float = float(block_time)
        self._next_tx_id: int = 1
        self._next_address: int = 1
        self.mempool: List[Transaction] = []
        self.transactions: Dict[int, Transaction] = {}
        self.token_balances: Dict[Tuple[Any, Any], int] = {}
        self.allowances: Dict[Tuple[Any, Any, Any], int] = {}
        self.token_supplies: Dict[Any, int] = {}
        self.contracts: Dict[Any, Any] = {}
        self.event_logs: Dict[int, List[Tuple[str, Any]]] = {}
        self.metrics: Dict[str, Any] = {
            "tx_submitted": 0,
            "tx_executed": 0,
            "tx_reverted": 0,
            "blocks": [],
        }
        self._lock = threading.RLock()

    def new_address(self) -> str:
        """Allocate a fresh 20-byte hex address."""
        address = f"0x{self._next_address:040x}"
        self._next_address += 1
        return address

    def register_contract(self, contract_address: Any, contract_instance: Any) -> None:
        """Register a contract so it can be resolved by address."""
        if contract_address in self.contracts:
            raise ValueError(f"Address already in use: {contract_address}")
        self.contracts[contract_address] = contract_instance

    def get_contract(self, contract_address: Any) -> Any:
        """Resolve a registered contract; raises KeyError for unknown addresses."""
        try:
            return self.contracts[contract_address]
        except KeyError:
            raise KeyError(f"No contract registered at {contract_address}") from None

    # Balance primitives used by token contracts

    def get_token_balance(self, contract_address: Any, holder: Any) -> int:
        return self.token_balances.get((contract_address, holder), 0)

    def credit(self, contract_address: Any, holder: Any, amount: int) -> None:
        key = (contract_address, holder)
        self.token_balances[key] = checked_add(self.token_balances.get(key, 0), amount)

    def debit(self, contract_address: Any, holder: Any, amount: int) -> bool:
        """Remove ``amount`` from a holder; returns False when the balance is short."""
        key = (contract_address, holder)
        balance = self.token_balances.get(key, 0)
        if balance < amount:
            return False
        self.token_balances[key] = balance - amount
        return True

    def get_allowance(self, contract_address: Any, owner: Any, spender: Any) -> int:
        return self.allowances.get((contract_address, owner, spender), 0)

    def set_allowance(self, contract_address: Any, owner: Any, spender: Any, amount: int) -> None:
        self.allowances[(contract_address, owner, spender)] = amount

    def get_token_supply(self, contract_address: Any) -> int:
        return self.token_supplies.get(contract_address, 0)

    def set_token_supply(self, contract_address: Any, amount: int) -> None:
        self.token_supplies[contract_address] = amount

    def adjust_token_supply(self, contract_address: Any, delta: int) -> None:
        """Grow (positive ``delta``) or shrink the recorded supply with range checks."""
        supply = self.get_token_supply(contract_address)
        if delta >= 0:
            self.token_supplies[contract_address] = checked_add(supply, delta)
        else:
            self.token_supplies[contract_address] = checked_sub(supply, -delta)

    # Atomicity

    def _capture_state(self) -> Dict[str, Any]:
        """Copy ledger state plus the storage of contracts that expose it."""
        return {
            "token_balances": self.token_balances.copy(),
            "allowances": self.allowances.copy(),
            "token_supplies": self.token_supplies.copy(),
            "event_logs": {b: list(ev) for b, ev in self.event_logs.items()},
            "contracts": {
                address: contract.snapshot_state()
                for address, contract in self.contracts.items()
                if hasattr(contract, "snapshot_state")
            },
        }

    def _restore_state(self, snap: Dict[str, Any]) -> None:
        self.token_balances = snap["token_balances"]
        self.allowances = snap["allowances"]
        self.token_supplies = snap["token_supplies"]
        self.event_logs = snap["event_logs"]
        for address, state in snap["contracts"].items():
            self.contracts[address].restore_state(state)

    @contextmanager
    def atomic(self, name: str = "tx") -> Iterator["ChainAgent"]:
        """
        Run the enclosed block as one all-or-nothing unit of work.

        Any exception, KeyboardInterrupt included, restores balances,
        allowances, supplies, event logs and contract storage to their state
        on entry, then propagates. The lock is re-entrant, so a contract may be
        called back while an outer call on the same thread is still in
        progress.
        """
        with self._lock:
            snap = self._capture_state()
            try:
                yield self
            except BaseException as exc:
                self._restore_state(snap)
                logger.debug("Reverted %s at block %d: %s", name, self.current_block, exc)
                raise

    # Events

    def log_event(self, event_name: str, payload: Any) -> None:
        """Store an event in the current block's log."""
        self.event_logs.setdefault(self.current_block, []).append((event_name, payload))

    def get_events(self, block: Optional[int] = None) -> List[Tuple[str, Any]]:
        """Get all events from a block or the full chain."""
        if block is None:
            all_events = []
            for b in sorted(self.event_logs):
                all_events.extend(self.event_logs[b])
            return all_events
        return list(self.event_logs.get(block, []))

    # Transactions

    def submit_transaction(
        self,
        sender: Any,
        data_fn: Callable[[Any, Any, "ChainAgent"], Any],
        payload: Any = None,
    ) -> int:
        """Queue a call for execution at the next block."""
        tx = Transaction(
            tx_id=self._next_tx_id,
            sender=sender,
            data_fn=data_fn,
            payload=payload,
            submit_block=self.current_block,
        )
        self._next_tx_id += 1
        self.mempool.append(tx)
        self.transactions[tx.tx_id] = tx
        self.metrics["tx_submitted"] += 1
        return tx.tx_id

    def _execute_transaction(self, tx: Transaction) -> None:
        """Run a queued call atomically, recording a ``PoolError`` as a revert instead of raising."""
        tx.included_block = self.current_block
        try:
            with self.atomic(f"tx {tx.tx_id}"):
                tx.return_value = tx.data_fn(tx.sender, tx.payload, self)
        except PoolError as exc:
            tx.reverted_reason = exc.reason
            self.metrics["tx_reverted"] += 1
            self.log_event(
                "TransactionReverted",
                {"tx_id": tx.tx_id, "sender": tx.sender, "reason": exc.reason},
            )
            return
        except Exception as exc:
            # Not a revert: mark the call as consumed and let the error surface.
            tx.reverted_reason = type(exc).__name__
            raise

        tx.executed = True
        self.metrics["tx_executed"] += 1
        self.log_event(
            "TransactionExecuted",
            {"tx_id": tx.tx_id, "sender": tx.sender, "return_value": tx.return_value},
        )

    def step(self) -> None:
        """
        Advance the chain one block and execute every queued transaction in order.

        An error that is not a ``PoolError`` propagates out of the block. The
        failing call is consumed; the calls queued behind it go back to the
        front of the mempool for the next block.
        """
        self.current_block += 1
        self.timestamp += self.block_time

        pending, self.mempool = self.mempool, []
        processed = 0
        try:
            for tx in pending:
                processed += 1
                self._execute_transaction(tx)
        finally:
            self.mempool[:0] = pending[processed:]
            self.metrics["blocks"].append({
                "block": self.current_block,
                "timestamp": self.timestamp,
                "tx_count": processed,
            })

    def get_transaction(self, tx_id: int) -> Transaction:
        return self.transactions[tx_id]

    def get_pending_txs(self) -> List[int]:
        """Return list of pending transaction IDs."""
        return [tx.tx_id for tx in self.mempool]

    def get_current_block(self) -> int:
        return self.current_block

    def get_account_state(self, address: Any) -> Dict[Any, int]:
        """Return the token balances held by an address."""
        return {
            contract: balance
            for (contract, holder), balance in self.token_balances.items()
            if holder == address
        }

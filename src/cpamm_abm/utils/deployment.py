import json
import logging
from typing import Dict, Optional, Tuple

from cpamm_abm.agents.blockchain import ChainAgent
from cpamm_abm.agents.pool import PoolAgent
from cpamm_abm.agents.token import FungibleToken

logger = logging.getLogger(__name__)


def deploy_pool(
    model,
    chain: ChainAgent,
    token0: Tuple[str, str] = ("Token0", "TK0"),
    token1: Tuple[str, str] = ("Token1", "TK1"),
) -> Tuple[PoolAgent, Dict[str, str]]:
    """
    Deploy two fungible tokens and a pool trading them.

    Parameters
    ----------
    model : mesa.Model
        Model the pool agent registers with.
    chain : ChainAgent
        Ledger the contracts are deployed to.
    token0, token1 : Tuple[str, str]
        ``(name, symbol)`` of each token.

    Returns
    -------
    Tuple[PoolAgent, Dict[str, str]]
        The pool and a mapping of ``token0``, ``token1`` and ``pool`` to addresses.
    """
    first = FungibleToken(chain, name=token0[0], symbol=token0[1])
    second = FungibleToken(chain, name=token1[0], symbol=token1[1])
    pool = PoolAgent(model, chain, first.address, second.address)

    addresses = {
        "token0": first.address,
        "token1": second.address,
        "pool": pool.address,
    }
    logger.info("Pool address: %s", pool.address)
    logger.info("Token-0 address: %s", first.address)
    logger.info("Token-1 address: %s", second.address)
    return pool, addresses


def save_addresses(path: str, addresses: Dict[str, str]) -> None:
    """Write deployed contract addresses to ``path`` as indented JSON."""
    with open(path, "w") as f:
        json.dump(addresses, f, indent=2)
    logger.info("Wrote deployment addresses to %s", path)


def load_addresses(path: str) -> Optional[Dict[str, str]]:
    """Read addresses written by :func:`save_addresses`; None if the file holds no mapping."""
    with open(path, "r") as f:
        data = json.load(f)
    return data if isinstance(data, dict) else None

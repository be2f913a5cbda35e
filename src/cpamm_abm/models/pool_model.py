# src/cpamm_abm/models/pool_model.py

from mesa import Model
from mesa.datacollection import DataCollector

from cpamm_abm.agents.blockchain import ChainAgent
from cpamm_abm.agents.participants import LiquidityProviderAgent, TraderAgent
from cpamm_abm.utils.deployment import deploy_pool, save_addresses


def _pool_price(m) -> float:
    """Spot price of token0 in token1, 0.0 while the pool is empty."""
    if m.pool.reserve0 == 0:
        return 0.0
    return m.pool.reserve1 / m.pool.reserve0


class PoolModel(Model):
    """
    Mesa model running liquidity providers and traders against one pool.

    - The chain, both tokens and the pool are deployed from the ``chain`` and
      ``tokens`` config sections.
    - Liquidity providers are created from ``liquidity_providers`` (a list),
      traders from ``traders`` (a count plus shared settings).
    - Each step activates all agents in random order, then collects reserves,
      share supply and price.
    """

    def __init__(self, config: dict):
        sim_cfg = config.get("simulation", {})
        seed = sim_cfg.get("seed", None)
        super().__init__(seed=seed)

        self.num_steps = sim_cfg.get("steps", 100)
        self.sim_seed = seed

        self.metrics = {
            "swaps": 0,
            "failed_swaps": 0,
            "deposits": 0,
            "failed_deposits": 0,
            "withdrawals": 0,
            "failed_withdrawals": 0,
        }

        # --- Chain and contracts ---
        chain_cfg = config.get("chain", {})
        self.chain = ChainAgent(self, block_time=float(chain_cfg.get("block_time", 12.0)))

        tokens_cfg = config.get("tokens", {})
        t0 = tokens_cfg.get("token0", {})
        t1 = tokens_cfg.get("token1", {})
        self.pool, self.addresses = deploy_pool(
            self,
            self.chain,
            token0=(t0.get("name", "Token0"), t0.get("symbol", "TK0")),
            token1=(t1.get("name", "Token1"), t1.get("symbol", "TK1")),
        )

        addresses_file = config.get("deployment", {}).get("addresses_file")
        if addresses_file:
            save_addresses(addresses_file, self.addresses)

        # --- DataCollector ---
        self.datacollector = DataCollector(
            model_reporters={
                "Reserve0": lambda m: m.pool.reserve0,
                "Reserve1": lambda m: m.pool.reserve1,
                "ShareSupply": lambda m: m.pool.share_supply,
                "Price": _pool_price,
                "Block": lambda m: m.chain.current_block,
            }
        )

        # --- Participants ---
        self._init_liquidity_providers(config.get("liquidity_providers", []))
        self._init_traders(config.get("traders", {}))

    def _agent_seed(self, offset: int):
        return None if self.sim_seed is None else int(self.sim_seed) + offset

    def _init_liquidity_providers(self, lp_cfgs: list):
        """Instantiate LiquidityProviderAgent instances (auto-registered)."""
        self.liquidity_providers = []
        for i, cfg in enumerate(lp_cfgs):
            lp = LiquidityProviderAgent(
                self,
                self.pool,
                balance0=int(cfg.get("balance0", 0)),
                balance1=int(cfg.get("balance1", 0)),
                deposit0=int(cfg.get("deposit0", 0)),
                deposit1=int(cfg.get("deposit1", 0)),
                withdraw_probability=float(cfg.get("withdraw_probability", 0.0)),
                withdraw_fraction=float(cfg.get("withdraw_fraction", 0.5)),
                seed=self._agent_seed(i),
            )
            self.liquidity_providers.append(lp)

    def _init_traders(self, trader_cfg: dict):
        """Instantiate ``count`` TraderAgent instances sharing one configuration."""
        self.traders = []
        for i in range(int(trader_cfg.get("count", 0))):
            trader = TraderAgent(
                self,
                self.pool,
                balance0=int(trader_cfg.get("balance0", 0)),
                balance1=int(trader_cfg.get("balance1", 0)),
                max_swap=int(trader_cfg.get("max_swap", 10)),
                swap_probability=float(trader_cfg.get("swap_probability", 1.0)),
                seed=self._agent_seed(1000 + i),
            )
            self.traders.append(trader)

    def check_reserves(self) -> bool:
        """Return True when cached reserves equal the pool's custodied balances."""
        token0 = self.chain.get_contract(self.pool.token0)
        token1 = self.chain.get_contract(self.pool.token1)
        return (
            self.pool.reserve0 == token0.balance_of(self.pool.address)
            and self.pool.reserve1 == token1.balance_of(self.pool.address)
        )

    def step(self):
        """
        Advance the model one tick:
          1. Activate all agents' step() in a random order (shuffle_do).
          2. Collect reserves, supply and price via DataCollector.
        """
        self.agents.shuffle_do("step")
        self.datacollector.collect(self)

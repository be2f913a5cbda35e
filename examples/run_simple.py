# examples/run_simple.py

import logging
import os
import matplotlib.pyplot as plt

from cpamm_abm.models.pool_model import PoolModel
from cpamm_abm.utils.config_parser import load_config


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    # 1. Locate and load the YAML configuration
    script_dir = os.path.dirname(os.path.abspath(__file__))
    config = load_config(os.path.join(script_dir, "config_simple.yaml"))

    # Write the deployed addresses next to the script
    config.setdefault("deployment", {})["addresses_file"] = os.path.join(script_dir, "addresses.json")

    # 2. Instantiate the PoolModel
    model = PoolModel(config)

    # 3. Run the simulation for the specified number of steps
    for _ in range(config["simulation"]["steps"]):
        model.step()

    # 4. Retrieve a DataFrame of collected model-level metrics
    df = model.datacollector.get_model_vars_dataframe()

    print("\n=== Final pool state (last 5 steps) ===")
    print(df.tail())

    print("\n=== Activity ===")
    for key, value in model.metrics.items():
        print(f"{key}: {value}")
    print(f"reserves in sync: {model.check_reserves()}")

    # 5. Plot reserves and price
    fig, ax1 = plt.subplots(figsize=(8, 4))
    ax1.plot(df.index, df["Reserve0"], label="Reserve0", color="tab:blue")
    ax1.plot(df.index, df["Reserve1"], label="Reserve1", color="tab:green")
    ax1.set_xlabel("Time Step")
    ax1.set_ylabel("Reserves")

    ax2 = ax1.twinx()
    ax2.plot(df.index, df["Price"], label="Price", color="tab:orange", linestyle="--")
    ax2.set_ylabel("Price (token1 per token0)", color="tab:orange")
    ax2.tick_params(axis="y", labelcolor="tab:orange")

    fig.suptitle("Pool Reserves and Price Over Time")
    fig.tight_layout()
    fig.legend(loc="upper left")
    plt.show()


if __name__ == "__main__":
    main()

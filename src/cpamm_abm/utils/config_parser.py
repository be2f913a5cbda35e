import json
import os
import yaml


def load_config(path: str) -> dict:
    """
    Load a simulation configuration file (YAML or JSON) and return it as a dictionary.

    Supports `.yaml`, `.yml`, and `.json`. The root object must be a mapping;
    the sections understood by :class:`~cpamm_abm.models.pool_model.PoolModel`
    are ``simulation``, ``chain``, ``tokens``, ``liquidity_providers``,
    ``traders`` and ``deployment``. Unknown sections are kept as-is.

    Parameters
    ----------
    path : str
        The path to the configuration file.

    Returns
    -------
    dict
        Parsed configuration data.

    Raises
    ------
    FileNotFoundError
        If the file does not exist at the given path.

    ValueError
        - If the file extension is unsupported.
        - If the file content is not a dictionary.
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Config file not found: {path}")

    _, ext = os.path.splitext(path.lower())

    if ext in (".yaml", ".yml"):
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    elif ext == ".json":
        with open(path, "r") as f:
            data = json.load(f)
    else:
        raise ValueError("Unsupported config extension. Use .yaml, .yml, or .json.")

    if not isinstance(data, dict):
        raise ValueError("Config file root must be a dictionary.")
    return data

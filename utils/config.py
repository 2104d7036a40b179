import yaml
import os
import platform
from typing import Any, Dict, Optional

from services.diagnostics.engine_config import EngineConfig
from services.diagnostics.errors import ConfigurationError


def load_config():
    # Assuming this file is at 'repo/utils/config.py', we go up one level.
    repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))

    # Platform-specific config mapping
    config_map = {
        'Darwin': 'config.mac.yaml',
        'Windows': 'config.windows.yaml'
    }

    system = platform.system()
    platform_config = config_map.get(system)

    # Use platform-specific config if it exists, otherwise fall back to config.yaml
    candidate_files = [platform_config, 'config.yaml'] if platform_config else ['config.yaml']

    for filename in candidate_files:
        config_path = os.path.join(repo_root, filename)
        if os.path.exists(config_path):
            with open(config_path, 'r') as file:
                try:
                    return yaml.safe_load(file) or {}
                except yaml.YAMLError as e:
                    raise ConfigurationError(f"Error parsing '{filename}': {e}")

    raise FileNotFoundError("No valid configuration file found (checked platform-specific and default).")


def load_engine_config(config: Optional[Dict[str, Any]] = None) -> EngineConfig:
    """
    Build the diagnostics EngineConfig from the 'trace_diagnostics' section.

    Args:
        config: Already-loaded configuration dict (loaded from disk when omitted).

    Returns:
        Validated EngineConfig; defaults apply for any option left out.

    Raises:
        ConfigurationError: If the section is not a mapping or holds an
                            invalid or unknown option.
    """
    if config is None:
        config = load_config()
    section = config.get("trace_diagnostics") or {}
    return EngineConfig.from_mapping(section)


if __name__ == '__main__':
    # For testing purposes, print both configurations.
    config = load_config()
    print("Loaded general configuration:")
    print(config)
    print("Trace diagnostics engine configuration:")
    print(load_engine_config(config).to_dict())

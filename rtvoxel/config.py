import logging
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from .atlas import AtlasRule, parse_rules

logger = logging.getLogger(__name__)


@dataclass
class VoxelConfig:
    # DVH
    nbins: int = 1000

    # Grid validation: max relative pitch deviation before a grid is rejected
    spacing_tolerance: float = 0.01

    # Resampling
    use_gpu: bool = False

    # Structure loading
    ignore_frame_of_reference: bool = False
    atlas: list[AtlasRule] = field(default_factory=list)

    # Concurrency
    workers: int | None = None  # None => auto (cpu_count - 1)

    # Outputs
    export_masks: Path | None = None

    def effective_workers(self) -> int:
        import os as _os
        if self.workers and self.workers > 0:
            return int(self.workers)
        cpu = _os.cpu_count() or 2
        return max(1, cpu - 1)


def load_config(config_path: str | Path, base: VoxelConfig | None = None) -> VoxelConfig:
    """Load settings from a YAML file on top of ``base`` (defaults when omitted).

    Unknown keys are logged and ignored.
    """
    config_path = Path(config_path)
    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config {config_path} must contain a mapping at the top level")

    cfg = base or VoxelConfig()
    known = {f.name for f in fields(VoxelConfig)}
    for key, value in data.items():
        if key not in known:
            logger.warning("Ignoring unknown config key %r in %s", key, config_path)
            continue
        if key == "atlas":
            value = parse_rules(value or [])
        elif key == "export_masks" and value is not None:
            value = Path(value)
        elif key == "nbins":
            value = int(value)
        elif key == "spacing_tolerance":
            value = float(value)
        elif key == "workers" and value is not None:
            value = int(value)
        setattr(cfg, key, value)

    logger.info("Loaded configuration from %s", config_path)
    return cfg

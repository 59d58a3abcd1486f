from __future__ import annotations

import dataclasses
import os

import yaml

from .bind_pose import BindPoseMode
from .retargeter import RetargetOptions

OPTION_FIELDS = {f.name for f in dataclasses.fields(RetargetOptions)}
POSE_MODE_FIELDS = ("source_pose_mode", "target_pose_mode")


def _pose_mode(value) -> BindPoseMode:
    if isinstance(value, str):
        key = value.strip().upper()
        if key.isdigit():
            return BindPoseMode(int(key))
        if key not in BindPoseMode.__members__:
            raise ValueError(f"Unknown bind pose mode '{value}', expected DEFAULT or CURRENT")
        return BindPoseMode[key]
    return BindPoseMode(int(value))


def options_from_dict(data: dict, base: RetargetOptions = None) -> RetargetOptions:
    """Overlay a mapping of option names onto `base` (defaults when None). Unknown keys are ignored."""
    values = dataclasses.asdict(base) if base is not None else {}
    for key, value in (data or {}).items():
        if key not in OPTION_FIELDS:
            print(f"[Config] Ignoring unknown option '{key}'")
            continue
        if key in POSE_MODE_FIELDS:
            value = _pose_mode(value)
        values[key] = value
    return RetargetOptions(**values)


def options_to_dict(options: RetargetOptions) -> dict:
    data = dataclasses.asdict(options)
    for key in POSE_MODE_FIELDS:
        data[key] = BindPoseMode(data[key]).name
    return data


def load_options(path: str, base: RetargetOptions = None) -> RetargetOptions:
    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping of options")
    # Allow the options to sit under a 'retarget' section
    if isinstance(data.get("retarget"), dict):
        data = data["retarget"]
    print(f"[Config] Loaded {len(data)} option(s) from {path}")
    return options_from_dict(data, base)


def save_options(options: RetargetOptions, path: str):
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(options_to_dict(options), f, sort_keys=False)

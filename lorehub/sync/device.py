"""Stable per-machine device identifier."""

import logging
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)


def get_or_create_device_id(path: str | Path) -> str:
    """Read the device id stored at ``path``, creating one on first use."""
    path = Path(path).expanduser()
    if path.exists():
        device_id = path.read_text(encoding="utf-8").strip()
        if device_id:
            return device_id

    device_id = str(uuid.uuid4())
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(device_id, encoding="utf-8")
    logger.info(f"Generated new device id {device_id} at {path}")
    return device_id

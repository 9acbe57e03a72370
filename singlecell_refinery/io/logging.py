"""Run logs and structured stage summaries.

Stage results expose ``to_dict()``; these helpers append them to JSON-lines
or YAML files so each run leaves a machine-readable trail next to the
human-readable log.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Tuple, Union

import numpy as np
import yaml

PathLike = Union[str, Path]

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def timestamped_path(path: PathLike) -> Path:
    """Insert a timestamp before the suffix: run.log -> run_20250101_120000.log"""
    path = Path(path)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return path.parent / f"{path.stem}_{stamp}{path.suffix or '.log'}"


def get_logger(
    name: str,
    log_path: PathLike,
    level: int = logging.INFO,
    timestamped: bool = True,
) -> Tuple[logging.Logger, Path]:
    """File logger for one sample or stage.

    Existing handlers on the named logger are replaced so repeated runs in
    one process do not duplicate lines.

    Returns
    -------
    Tuple[logging.Logger, Path]
        The logger and the file it writes to
    """
    target = timestamped_path(log_path) if timestamped else Path(log_path)
    if not timestamped:
        target.unlink(missing_ok=True)
    target.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    handler = logging.FileHandler(target, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(handler)
    return logger, target


def to_serializable(value: Any) -> Any:
    """Convert numpy scalars/arrays and paths into JSON/YAML friendly values."""
    if isinstance(value, dict):
        return {str(k): to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_serializable(v) for v in value]
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Path):
        return str(value)
    return value


def log_json(log_path: PathLike, record: Dict[str, Any]) -> None:
    """Append ``record`` as one JSON line."""
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(to_serializable(record), default=str))
        handle.write("\n")


def log_yaml(
    log_path: PathLike,
    record: Dict[str, Any],
    *,
    logger: logging.Logger | None = None,
) -> None:
    """Append ``record`` as a YAML document, or send it to ``logger`` instead."""
    text = yaml.safe_dump(to_serializable(record), sort_keys=False).rstrip("\n") + "\n---"
    if logger is not None:
        logger.info("%s", text)
        return
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(text)
        handle.write("\n")


def log_stage_summary(log_path: PathLike, sample_id: str, stage: str, result: Any) -> None:
    """Append a stage result's ``to_dict()`` tagged with sample and stage."""
    record = {"sample_id": sample_id, "stage": stage, "time": datetime.now().isoformat()}
    record.update(result.to_dict())
    log_json(log_path, record)

"""Persist benchmark results as JSON."""

import json
import logging
import os

from utils.folder_naming import get_results_path

logger = logging.getLogger(__name__)


def save_results(results, output_dir, label=None):
    """Write ``results.to_dict()`` to a timestamped file. Returns its path."""
    os.makedirs(output_dir, exist_ok=True)
    path = get_results_path(output_dir, label=label)
    with open(path, "w") as f:
        json.dump(results.to_dict(), f, indent=2)
    logger.info("Saved results to %s", path)
    return path

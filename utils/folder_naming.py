"""Result file naming: timestamped slugs, containment, dedup."""

import os
import re
from datetime import datetime

RESULTS_PREFIX = "matchloop-results"
MAX_DEDUP = 1000


def slugify(text):
    """Convert text to a filesystem-safe slug."""
    text = text.lower().strip()
    text = re.sub(r"[^\w\s-]", "", text)
    text = re.sub(r"[\s_-]+", "_", text)
    return text.strip("_")


def results_file_name(when=None, label=None):
    """``matchloop-results-2024-05-01_12-30-00[-label].json``"""
    when = when or datetime.now()
    name = f"{RESULTS_PREFIX}-{when.strftime('%Y-%m-%d_%H-%M-%S')}"
    if label:
        name += f"-{slugify(label)}"
    return name + ".json"


def _check_containment(path, base_dir):
    """Verify the resolved path stays within base_dir."""
    resolved = os.path.realpath(path)
    if not resolved.startswith(os.path.realpath(base_dir) + os.sep):
        raise ValueError(f"Results path escapes output directory: {path}")
    return resolved


def get_results_path(output_dir, when=None, label=None):
    """Return a deduplicated results file path inside ``output_dir``."""
    base = os.path.join(output_dir, results_file_name(when, label))
    _check_containment(base, output_dir)

    if not os.path.exists(base):
        return base

    stem, ext = os.path.splitext(base)
    for counter in range(2, MAX_DEDUP + 2):
        candidate = f"{stem}_{counter}{ext}"
        if not os.path.exists(candidate):
            return candidate

    raise RuntimeError(f"Too many result files with the same timestamp (>{MAX_DEDUP}): {base}")

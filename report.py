"""
Update reporting for kau: GitHub Actions step outputs and a markdown summary.

Failures to write outputs are logged as warnings and never re-raised so that
a broken output channel cannot fail an otherwise successful run.
"""

import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


def _plan_payload(plan) -> Dict[str, Any]:
    """The per-update dict exposed to workflow steps."""
    return {
        'file': Path(plan.file).name,
        'accessory': plan.accessory,
        'image': plan.image,
        'old_version': plan.old_version,
        'new_version': plan.new_version,
    }


def format_summary_line(plan) -> str:
    return (f"- **{plan.accessory}** ({Path(plan.file).name}): "
            f"`{plan.old_version}` → `{plan.new_version}`")


def updates_json(updates: Iterable) -> str:
    """Compact JSON list of {file, accessory, image, old_version, new_version}."""
    return json.dumps([_plan_payload(plan) for plan in updates], separators=(',', ':'))


def updates_summary(updates: Iterable) -> str:
    """Markdown bullet list, one line per update."""
    return ''.join(format_summary_line(plan) + '\n' for plan in updates)


def _multiline(name: str, value: str) -> str:
    delimiter = f"ghadelimiter_{uuid.uuid4().hex}"
    return f"{name}<<{delimiter}\n{value}\n{delimiter}\n"


def github_output_lines(report) -> str:
    """Render the step outputs for a finished run."""
    updates: List = list(report.updates)
    text = f"updates-available={'true' if updates else 'false'}\n"
    text += f"updates-count={len(updates)}\n"
    if updates:
        text += _multiline('updates-json', updates_json(updates))
        text += _multiline('updates-summary', updates_summary(updates))
    return text


def write_github_output(output_path: Optional[str], report) -> bool:
    """Append the run's outputs to the GITHUB_OUTPUT file.

    Safe to call unconditionally: returns False without writing when
    output_path is empty.
    """
    if not output_path:
        return False

    try:
        with open(output_path, 'a', encoding='utf-8') as f:
            f.write(github_output_lines(report))
        logger.debug(f"Wrote step outputs to {output_path}")
        return True
    except OSError as e:
        logger.warning(f"Could not write step outputs to {output_path}: {e}")
        return False

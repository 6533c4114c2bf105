"""
Print Broker Settlement Hub - Readiness Tracker

A job is ready for production when every deliverable category has at least
as many attached files as it requires. A null requirement is satisfied
trivially, but a job with no declared requirement at all is never
auto-gated; it has to be marked ready by a manual override.
"""

from enum import Enum
from typing import Any, Dict, Optional


class FileKind(str, Enum):
    ARTWORK = "artwork"
    DATA_FILE = "data_file"
    PROOF = "proof"
    OTHER = "other"


# file kind -> (uploaded counter, required counter)
COUNTER_FIELDS = {
    FileKind.ARTWORK: ("uploaded_artwork", "required_artwork"),
    FileKind.DATA_FILE: ("uploaded_data_files", "required_data_files"),
}


def _category(uploaded: int, required: Optional[int]) -> Dict[str, Any]:
    return {
        "uploaded": uploaded,
        "required": required,
        "complete": required is None or uploaded >= required,
    }


def has_requirements(job: Dict[str, Any]) -> bool:
    return job.get("required_artwork") is not None or job.get("required_data_files") is not None


def readiness_progress(job: Dict[str, Any]) -> Dict[str, Any]:
    """
    Progress report for a job's deliverables.

    Returns:
        {
            "artwork": {"uploaded": 1, "required": 1, "complete": True},
            "data_files": {"uploaded": 0, "required": 0, "complete": True},
            "overall": {"complete": True, "percentage": 100}
        }
    """
    artwork = _category(job.get("uploaded_artwork", 0), job.get("required_artwork"))
    data_files = _category(job.get("uploaded_data_files", 0), job.get("required_data_files"))

    total_required = sum(c["required"] or 0 for c in (artwork, data_files))
    total_satisfied = sum(min(c["uploaded"], c["required"] or 0) for c in (artwork, data_files))
    complete = has_requirements(job) and artwork["complete"] and data_files["complete"]
    if total_required:
        percentage = int(total_satisfied * 100 / total_required)
    else:
        percentage = 100 if complete else 0

    return {
        "artwork": artwork,
        "data_files": data_files,
        "overall": {"complete": complete, "percentage": percentage},
    }


def is_ready(job: Dict[str, Any]) -> bool:
    return readiness_progress(job)["overall"]["complete"]


def counter_changes(job: Dict[str, Any], kind: FileKind, file_id: str) -> Dict[str, Any]:
    """
    Field changes for attaching one file. Empty when the file id was
    already counted, so re-recording the same upload is a no-op.
    """
    attached = list(job.get("attached_file_ids") or [])
    if file_id in attached:
        return {}
    attached.append(file_id)
    changes: Dict[str, Any] = {"attached_file_ids": attached}
    if kind in COUNTER_FIELDS:
        uploaded_field, _ = COUNTER_FIELDS[kind]
        changes[uploaded_field] = job.get(uploaded_field, 0) + 1
    return changes

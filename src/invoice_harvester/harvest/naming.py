# src/invoice_harvester/harvest/naming.py

"""
Deterministic output naming.

The prediction cache is read from the download manager's filename hook, which
fires synchronously; nothing here may await.
"""

from __future__ import annotations

from dataclasses import dataclass

from .models import Mode

BASE_DIRS = {Mode.PDF: "invoice", Mode.ISDOC: "isdoc"}


@dataclass(slots=True, frozen=True)
class Prediction:
    item_id: str
    group_id: str


class PredictionCache:
    """Single slot: the (item, group) expected for the next download event."""

    def __init__(self) -> None:
        self._slot: Prediction | None = None

    def set(self, item_id: str, group_id: str) -> None:
        self._slot = Prediction(item_id=item_id, group_id=group_id)

    def get(self) -> Prediction | None:
        return self._slot

    def clear(self) -> None:
        self._slot = None


def target_dir(root: str, mode: Mode, group_id: str) -> str:
    if mode == Mode.BOTH:
        raise ValueError("BOTH has no single target directory")
    parts = [p for p in (root.strip("/"), BASE_DIRS[mode], group_id) if p]
    return "/".join(parts)


def target_stem(root: str, mode: Mode, group_id: str, item_id: str) -> str:
    """Path without extension, e.g. faktury/invoice/55/100"""
    return f"{target_dir(root, mode, group_id)}/{item_id}"


def suggest_filename(
    prediction: Prediction | None,
    *,
    filename: str = "",
    mime: str = "",
    url: str = "",
    root: str = "faktury",
) -> str | None:
    """
    Filename hook: where the next artifact should land.

    Returns None (leave the download alone) when nothing is predicted or the
    artifact is neither a PDF nor an ISDOC document.
    """
    if prediction is None:
        return None

    fn = (filename or "").lower()
    mt = (mime or "").lower()
    u = (url or "").lower()

    is_pdf = fn.endswith(".pdf") or "pdf" in mt or ".pdf" in u
    is_isdoc = ".isdoc" in fn or ".isdoc" in u
    if not is_pdf and not is_isdoc:
        return None

    if is_pdf:
        mode, ext = Mode.PDF, "pdf"
    elif ".isdocx" in fn or ".isdocx" in u:
        mode, ext = Mode.ISDOC, "isdocx"
    else:
        mode, ext = Mode.ISDOC, "isdoc"

    return f"{target_stem(root, mode, prediction.group_id, prediction.item_id)}.{ext}"

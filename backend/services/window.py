"""
Sliding window arithmetic.

Pure functions only: no I/O, no session state.  The session manager feeds
them the current window and task map and applies the result.
"""

from typing import Dict, Iterable, List, Optional, Tuple

from backend.services.config import DocType, WindowPolicy
from backend.services.exceptions import InvalidPageError
from backend.services.session_models import (
    PageTask,
    PageTaskStatus,
    WindowAction,
    WindowRange,
)


def validate_page(page: int, page_count: Optional[int] = None) -> None:
    """Reject non-positive pages and pages past the end of the document."""
    if isinstance(page, bool) or not isinstance(page, int) or page < 1:
        raise InvalidPageError(page)
    if page_count is not None and page > page_count:
        raise InvalidPageError(page, page_count=page_count)


def calculate_window(
    page: int,
    doc_type: DocType,
    policy: WindowPolicy,
    page_count: Optional[int] = None,
) -> WindowRange:
    """
    Window centered on ``page``, sized by ``doc_type``.

    Start is clamped to 1 and end to ``page_count`` when it is known.
    """
    size = policy.size_for(doc_type)
    start = max(1, page - size.before)
    end = page + size.after
    if page_count is not None:
        end = min(page_count, end)
    return WindowRange(start=start, end=max(start, end))


def is_jump(from_page: int, to_page: int, threshold: int) -> bool:
    """A move is a jump when the page delta is strictly greater than ``threshold``."""
    return abs(to_page - from_page) > threshold


def next_window(
    current: WindowRange,
    page: int,
    action: WindowAction,
    doc_type: DocType,
    policy: WindowPolicy,
    page_count: Optional[int] = None,
) -> WindowRange:
    """
    Recompute the window for a navigation event.

    ``shift`` relocates the window around ``page``.  ``extend`` takes the
    window around ``page`` but never pulls the leading edge back, so a small
    backward scroll does not drop prepared pages ahead of the reader.
    """
    target = calculate_window(page, doc_type, policy, page_count)
    if action is WindowAction.SHIFT:
        return target
    end = max(current.end, target.end)
    if page_count is not None:
        end = min(page_count, end)
    return WindowRange(start=target.start, end=max(target.start, end))


def _priority_key(page: int, center: int) -> Tuple[float, int]:
    offset = page - center
    if offset >= 0:
        return (float(offset), page)
    # -1 sorts between +1 and +2, -2 between +3 and +4, ...
    return (-offset * 2 - 0.5, page)


def prioritize_pages(pages: Iterable[int], center: int) -> List[int]:
    """
    Order pages for generation around the reader.

    Produces current, +1, -1, +2, +3, -2, +4, +5, ... so pages ahead of the
    reader win over pages already read.
    """
    return sorted(pages, key=lambda p: _priority_key(p, center))


def reconcile(
    tasks: Dict[int, PageTask],
    window: WindowRange,
) -> Tuple[List[int], List[int]]:
    """
    Diff a task map against a new window.

    Returns ``(canceled, new)``:
    - ``canceled``: pages outside ``window`` whose task is still pending or
      in progress.  Terminal pages outside the window are kept as history.
    - ``new``: pages inside ``window`` with no task yet.  Pages already
      pending, in progress, completed or failed are left alone.

    Both lists are sorted ascending.
    """
    canceled = sorted(
        page
        for page, task in tasks.items()
        if not window.contains(page) and not task.status.is_terminal
    )
    new = [page for page in window.pages() if page not in tasks]
    return canceled, new


def progress_counts(tasks: Dict[int, PageTask]) -> Dict[PageTaskStatus, int]:
    counts = {status: 0 for status in PageTaskStatus}
    for task in tasks.values():
        counts[task.status] += 1
    return counts


def percentage(completed: int, total: int) -> int:
    """Half-up rounding of completed / total * 100."""
    if total <= 0:
        return 0
    return int(completed * 100 / total + 0.5)

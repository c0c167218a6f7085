"""
Window assembly.

Turns an ordered run of text blocks into a single body that fits a token
budget. When everything fits, the blocks are simply joined. Otherwise the
head/tail policy applies:

    [ head of the oldest block ][ elision marker ][ newest text, backwards ]

    - The head gets a fixed fraction of the usable budget and is cut from the
      very beginning of the oldest block (usually the command and its first
      lines of context).
    - The tail gets the rest. Whole blocks are taken from the newest backwards
      while they fit; older blocks that do not fit are dropped entirely. Only
      when the newest block alone is too large is it cut inside.
    - The marker states how many bytes, lines and entries were left out. Its
      numbers are padded to a fixed width, so its size never changes.

When even the marker does not fit, the newest text is kept behind a compact
"[...]" marker, capped at the size of the full marker. Together with the
fixed-size marker this makes the window grow with the budget, never shrink.

All measuring and slicing goes through the same token counter, and the final
text is measured again before it is returned, so the window never exceeds
the usable budget. Cuts happen between characters, never inside one, and
move to a nearby line break when there is one.
"""

import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from logtrains.errors import BudgetExhaustedError
from logtrains.schema import DEFAULT_HEAD_FRACTION, Budget
from logtrains.selector import TextBlock

logger = logging.getLogger(__name__)

TokenCountFn = Callable[[str], int]

# How far a cut may move to land on a line break, in characters
DEFAULT_SNAP_WINDOW = 256

# Re-measure attempts before falling back to the compact window
MAX_FIT_ATTEMPTS = 8

ELISION_TEMPLATE = "[... {bytes} bytes / {lines} lines omitted ({entries} entries dropped) ...]"

# Stands in for the full marker when the budget is too small to hold it
COMPACT_MARKER = "[...]"


@dataclass
class Window:
    """
    An assembled, budget-checked body of captured output.

    Attributes:
        text: The assembled body
        token_count: Tokens in ``text`` as measured by the counter
        truncated: Whether any input text was left out
        dropped_entry_count: Blocks that contributed nothing to ``text``
        block_count: Number of input blocks
        original_token_count: Tokens of the untruncated concatenation
        omitted_bytes: UTF-8 bytes left out
        omitted_lines: Line breaks left out
        usable_tokens: Budget available to the body
    """

    text: str
    token_count: int
    truncated: bool = False
    dropped_entry_count: int = 0
    block_count: int = 0
    original_token_count: int = 0
    omitted_bytes: int = 0
    omitted_lines: int = 0
    usable_tokens: int = 0


def join_blocks(texts: Sequence[str]) -> str:
    """
    Concatenate block texts in order, each starting on its own line.

    A newline is inserted after a block only if it does not already end
    with one, so the result of joining a suffix of ``texts`` is always a
    suffix of joining all of them.
    """
    parts = []
    last = len(texts) - 1
    for i, text in enumerate(texts):
        parts.append(text)
        if i < last and not text.endswith("\n"):
            parts.append("\n")
    return "".join(parts)


def elision_marker(
    omitted_bytes: int,
    omitted_lines: int,
    dropped_entries: int,
    widths: tuple[int, int, int] = (0, 0, 0),
) -> str:
    """
    The line inserted where text was cut out.

    ``widths`` right-aligns each number to a fixed number of characters, so
    every marker for one input has the same length whatever was omitted.
    """
    bytes_width, lines_width, entries_width = widths
    return ELISION_TEMPLATE.format(
        bytes=str(omitted_bytes).rjust(bytes_width),
        lines=str(omitted_lines).rjust(lines_width),
        entries=str(dropped_entries).rjust(entries_width),
    )


# =============================================================================
# Slicing
# =============================================================================


def fit_prefix(
    text: str,
    budget: int,
    count: TokenCountFn,
    snap_window: int = DEFAULT_SNAP_WINDOW,
) -> int:
    """
    Length of the longest prefix of ``text`` within ``budget`` tokens.

    The cut is moved back to just after a line break when one lies within
    ``snap_window`` characters.
    """
    if budget <= 0 or not text:
        return 0
    if count(text) <= budget:
        return len(text)

    end = _largest_fitting(len(text), budget, lambda n: count(text[:n]))
    if end <= 0:
        return 0

    newline = text.rfind("\n", max(0, end - snap_window), end)
    if newline != -1:
        end = newline + 1
    return end


def fit_suffix(
    text: str,
    budget: int,
    count: TokenCountFn,
    snap_window: int = DEFAULT_SNAP_WINDOW,
) -> int:
    """
    Start index of the longest suffix of ``text`` within ``budget`` tokens.

    The cut is moved forward to just after a line break when one lies within
    ``snap_window`` characters.
    """
    if budget <= 0 or not text:
        return len(text)
    if count(text) <= budget:
        return 0

    size = _largest_fitting(len(text), budget, lambda n: count(text[len(text) - n:]))
    start = len(text) - size
    if size <= 0:
        return len(text)

    if text[start - 1] == "\n":
        return start
    newline = text.find("\n", start, min(len(text), start + snap_window))
    if newline != -1 and newline + 1 < len(text):
        start = newline + 1
    return start


def _largest_fitting(limit: int, budget: int, cost: Callable[[int], int]) -> int:
    """
    Largest n in [0, limit] with cost(n) <= budget, for non-decreasing cost.

    Gallops upward from ``budget`` characters before bisecting, so only text
    near the final size is ever measured.
    """
    low = 0
    trial = min(limit, max(budget, 1))
    while trial < limit and cost(trial) <= budget:
        low = trial
        trial = min(limit, trial * 2)
    high = trial
    if cost(high) <= budget:
        return high

    # Invariant: cost(low) <= budget < cost(high)
    while high - low > 1:
        mid = (low + high) // 2
        if cost(mid) <= budget:
            low = mid
        else:
            high = mid
    return low


# =============================================================================
# Assembler
# =============================================================================


class WindowAssembler:
    """
    Builds budget-constrained windows with head/tail preservation.

    Example:
        assembler = WindowAssembler(head_fraction=0.15)
        window = assembler.assemble(blocks, Budget(max_tokens=3584), counter)
        if window.truncated:
            print(f"dropped {window.dropped_entry_count} entries")
    """

    def __init__(
        self,
        head_fraction: float = DEFAULT_HEAD_FRACTION,
        snap_window: int = DEFAULT_SNAP_WINDOW,
    ) -> None:
        if not 0 <= head_fraction < 1:
            raise ValueError("head_fraction must be in [0, 1)")
        self.head_fraction = head_fraction
        self.snap_window = snap_window

    def assemble(
        self,
        blocks: Sequence[TextBlock | str],
        budget: Budget,
        token_counter: TokenCountFn,
    ) -> Window:
        """
        Assemble ``blocks`` (oldest first) into a window within ``budget``.

        Args:
            blocks: Text blocks in reading order
            budget: Token ceiling and preamble reservation
            token_counter: Function measuring text in tokens

        Returns:
            The assembled Window

        Raises:
            BudgetExhaustedError: The preamble leaves no room for any text
        """
        usable = budget.usable
        if usable <= 0:
            raise BudgetExhaustedError(
                max_tokens=budget.max_tokens,
                reserved_for_preamble=budget.reserved_for_preamble,
            )

        texts = [b.text if isinstance(b, TextBlock) else b for b in blocks]
        full = join_blocks(texts)

        # Counters never exceed the byte length, so small bodies fit unmeasured
        if len(full.encode("utf-8")) <= usable:
            tokens = token_counter(full)
            return Window(
                text=full,
                token_count=tokens,
                block_count=len(texts),
                original_token_count=tokens,
                usable_tokens=usable,
            )

        total = token_counter(full)
        if total <= usable:
            return Window(
                text=full,
                token_count=total,
                block_count=len(texts),
                original_token_count=total,
                usable_tokens=usable,
            )

        window = self._truncate(texts, full, usable, token_counter)
        window.original_token_count = total
        logger.info(
            "Input too long (%d tokens); kept %d of %d usable tokens, "
            "dropped %d of %d entries",
            total,
            window.token_count,
            usable,
            window.dropped_entry_count,
            len(texts),
        )
        return window

    def _truncate(
        self,
        texts: list[str],
        full: str,
        usable: int,
        count: TokenCountFn,
    ) -> Window:
        spans = _block_spans(texts)
        widths = (
            len(str(len(full.encode("utf-8")))),
            len(str(full.count("\n"))),
            len(str(len(texts))),
        )
        # Padded markers all have this length, whatever they report
        marker_size = count(elision_marker(0, 0, 0, widths))
        head_budget = math.floor(usable * self.head_fraction)
        marker_reserve = count("\n" + elision_marker(0, 0, 0, widths) + "\n")
        tail_budget = usable - head_budget - marker_reserve

        if tail_budget > 0:
            for _ in range(MAX_FIT_ATTEMPTS):
                head_end = fit_prefix(texts[0], head_budget, count, self.snap_window)
                tail_start = self._tail_start(texts, spans, full, tail_budget, count)
                head_end = min(head_end, tail_start)
                text = self._compose(full, spans, head_end, tail_start, widths)
                tokens = count(text)
                if tokens <= usable:
                    return self._window(full, spans, head_end, tail_start, text, tokens, usable)
                tail_budget -= tokens - usable
                if tail_budget <= 0:
                    break

        return self._compact(full, spans, min(usable, marker_size), usable, count)

    def _compact(
        self,
        full: str,
        spans: list[tuple[int, int]],
        limit: int,
        usable: int,
        count: TokenCountFn,
    ) -> Window:
        """
        Window for budgets too small for the full marker.

        The text is capped at ``limit``, the size of the full marker. Every
        head/marker/tail window is at least that large, so a larger budget
        never yields a shorter window.
        """
        prefix = COMPACT_MARKER + "\n"
        prefix_size = count(prefix)
        if limit < prefix_size:
            tail_start = fit_suffix(full, limit, count, self.snap_window)
            text = full[tail_start:]
        else:
            tail_start = fit_suffix(full, limit - prefix_size, count, self.snap_window)
            text = prefix + full[tail_start:]
        return self._window(full, spans, 0, tail_start, text, count(text), usable)

    def _tail_start(
        self,
        texts: list[str],
        spans: list[tuple[int, int]],
        full: str,
        budget: int,
        count: TokenCountFn,
    ) -> int:
        """Start offset in ``full`` of the tail kept within ``budget``."""
        start = None
        # Whole blocks, newest first; the oldest block only ever supplies the head
        for i in range(len(texts) - 1, 0, -1):
            candidate = full[spans[i][0]:]
            if len(candidate.encode("utf-8")) > budget and count(candidate) > budget:
                break
            start = spans[i][0]
        if start is not None:
            return start

        newest_start = spans[-1][0]
        return newest_start + fit_suffix(full[newest_start:], budget, count, self.snap_window)

    def _compose(
        self,
        full: str,
        spans: list[tuple[int, int]],
        head_end: int,
        tail_start: int,
        widths: tuple[int, int, int],
    ) -> str:
        head = full[:head_end]
        tail = full[tail_start:]
        omitted = full[head_end:tail_start]
        marker = elision_marker(
            len(omitted.encode("utf-8")),
            omitted.count("\n"),
            _dropped(spans, head_end, tail_start),
            widths,
        )
        if head and not head.endswith("\n"):
            marker = "\n" + marker
        if not tail.startswith("\n"):
            marker = marker + "\n"
        return head + marker + tail

    def _window(
        self,
        full: str,
        spans: list[tuple[int, int]],
        head_end: int,
        tail_start: int,
        text: str,
        tokens: int,
        usable: int,
    ) -> Window:
        omitted = full[head_end:tail_start]
        return Window(
            text=text,
            token_count=tokens,
            truncated=True,
            dropped_entry_count=_dropped(spans, head_end, tail_start),
            block_count=len(spans),
            omitted_bytes=len(omitted.encode("utf-8")),
            omitted_lines=omitted.count("\n"),
            usable_tokens=usable,
        )


def _block_spans(texts: list[str]) -> list[tuple[int, int]]:
    """Offsets of each block's text inside ``join_blocks(texts)``."""
    spans = []
    offset = 0
    last = len(texts) - 1
    for i, text in enumerate(texts):
        spans.append((offset, offset + len(text)))
        offset += len(text)
        if i < last and not text.endswith("\n"):
            offset += 1
    return spans


def _dropped(spans: list[tuple[int, int]], head_end: int, tail_start: int) -> int:
    """Blocks lying entirely inside the omitted region."""
    return sum(1 for start, end in spans if head_end <= start < tail_start and end <= tail_start)


def assemble(
    blocks: Sequence[TextBlock | str],
    budget: Budget,
    token_counter: TokenCountFn,
    head_fraction: float = DEFAULT_HEAD_FRACTION,
) -> Window:
    """Assemble ``blocks`` with a default-configured WindowAssembler."""
    return WindowAssembler(head_fraction=head_fraction).assemble(blocks, budget, token_counter)

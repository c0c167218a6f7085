"""
History selection.

Resolves a caller's request into a concrete, ordered run of entries.

"Concatenate the last N captures" and "pick the capture N steps back" are
different questions, so they are different request types:

    MostRecent(n)   the n newest entries, returned oldest-first
    AtOffset(k)     exactly one entry, the k-th most recent (0 = newest)

Explicit text (a file or piped stdin) bypasses the store entirely and is
represented by ExplicitText.
"""

from collections.abc import Iterator
from dataclasses import dataclass, field

from logtrains.errors import SelectionEmptyError, SelectionOutOfRangeError
from logtrains.schema import EntryRef
from logtrains.store import EntryStore


@dataclass(frozen=True)
class MostRecent:
    """Select the ``n`` newest entries."""

    n: int = 1

    def __post_init__(self) -> None:
        if self.n < 1:
            raise ValueError("MostRecent needs n >= 1")

    def describe(self) -> str:
        return f"MostRecent({self.n})"


@dataclass(frozen=True)
class AtOffset:
    """Select the single entry ``k`` steps back from the newest."""

    k: int = 0

    def __post_init__(self) -> None:
        if self.k < 0:
            raise ValueError("AtOffset needs k >= 0")

    def describe(self) -> str:
        return f"AtOffset({self.k})"


@dataclass(frozen=True)
class ExplicitText:
    """Text supplied directly by the caller (file contents or stdin)."""

    text: str
    label: str | None = None

    def describe(self) -> str:
        return f"ExplicitText({self.label or 'stdin'})"


SelectionRequest = MostRecent | AtOffset
AnalysisRequest = MostRecent | AtOffset | ExplicitText


@dataclass(frozen=True)
class TextBlock:
    """
    One unit of text handed to the Window Assembler.

    Attributes:
        body: The captured text
        header: Optional one-line header (command and timestamp)
        identifier: Entry identifier the block came from, if any
    """

    body: str
    header: str | None = None
    identifier: int | None = None

    @property
    def text(self) -> str:
        """Header and body as they appear in the window."""
        if self.header:
            return f"{self.header}\n{self.body}"
        return self.body

    @property
    def byte_length(self) -> int:
        return len(self.text.encode("utf-8"))


def format_header(ref: EntryRef) -> str:
    """Header line describing where a block of output came from."""
    stamp = ref.captured_at.strftime("%Y-%m-%d %H:%M:%S")
    command = ref.command_text if ref.command_text else "(piped input)"
    header = f"$ {command}  [{stamp}]"
    if ref.exit_code is not None:
        header += f" (exit {ref.exit_code})"
    return header


@dataclass(frozen=True)
class HistorySelection:
    """
    Entries resolved from a request, oldest first.

    Attributes:
        refs: Selected entry metadata in reading order
        request: The request this selection answers
    """

    refs: tuple[EntryRef, ...]
    request: SelectionRequest = field(default_factory=MostRecent)

    def __len__(self) -> int:
        return len(self.refs)

    def __iter__(self) -> Iterator[EntryRef]:
        return iter(self.refs)

    @property
    def identifiers(self) -> list[int]:
        return [ref.identifier for ref in self.refs]

    @property
    def byte_length(self) -> int:
        """Total body size, known without loading any body."""
        return sum(ref.byte_length for ref in self.refs)

    def load_blocks(self, store: EntryStore, include_headers: bool = True) -> list[TextBlock]:
        """
        Load the selected bodies into text blocks, preserving order.

        Raises:
            EntryNotFoundError: An entry was removed after selection
            EntryCorruptError: An entry's body is not valid text
        """
        return [
            TextBlock(
                body=store.load_body(ref),
                header=format_header(ref) if include_headers else None,
                identifier=ref.identifier,
            )
            for ref in self.refs
        ]


class HistorySelector:
    """
    Resolves selection requests against an Entry Store.

    Only directory listings and the headers of the chosen entries are read;
    bodies stay on disk until the selection is loaded.

    Example:
        selector = HistorySelector(store)
        selection = selector.select(MostRecent(3))
        blocks = selection.load_blocks(store)
    """

    def __init__(self, store: EntryStore) -> None:
        self.store = store

    def select(self, request: SelectionRequest) -> HistorySelection:
        """
        Resolve ``request`` to an ordered selection.

        Raises:
            SelectionEmptyError: The store has no entries
            SelectionOutOfRangeError: AtOffset reaches past the oldest entry
            EntryNotFoundError: A chosen entry vanished while reading its header
        """
        identifiers = self.store.identifiers()
        available = len(identifiers)
        if available == 0:
            raise SelectionEmptyError(request=request.describe(), available=0)

        if isinstance(request, MostRecent):
            chosen = identifiers[-request.n:]
        elif isinstance(request, AtOffset):
            if request.k >= available:
                raise SelectionOutOfRangeError(
                    request=request.describe(),
                    available=available,
                    offset=request.k,
                )
            chosen = [identifiers[available - 1 - request.k]]
        else:
            raise TypeError(f"Unsupported selection request: {request!r}")

        refs = tuple(self.store.get(identifier) for identifier in chosen)
        return HistorySelection(refs=refs, request=request)

import logging
import threading
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from ..errors import (
    DuplicateEntryError,
    InvalidPatternError,
    ListImportError,
    PolicyUpdateError,
)
from ..models import (
    AddEntry,
    Decision,
    FilterList,
    FilterPolicy,
    ListName,
    Mutation,
    RemoveEntry,
    RenameEntry,
    ReplaceList,
    SetMode,
)

logger = logging.getLogger("mitm_sieve")

EXCHANGE_FIELD = "uri"


def normalize_pattern(pattern: Optional[str]) -> str:
    if pattern is None or not str(pattern).strip():
        raise InvalidPatternError("Patterns cannot be empty")
    return str(pattern).strip()


def build_list(name: ListName, patterns: Iterable[str]) -> FilterList:
    """Validates every pattern and builds a list, keeping the given order."""
    entries: List[str] = []
    seen = set()
    for raw in patterns:
        pattern = normalize_pattern(raw)
        if pattern.lower() in seen:
            raise DuplicateEntryError(f"'{pattern}' appears more than once in the {name.value} list")
        seen.add(pattern.lower())
        entries.append(pattern)
    return FilterList(name=name, entries=tuple(entries))


def apply_mutation(policy: FilterPolicy, mutation: Mutation) -> FilterPolicy:
    """Returns the snapshot that follows ``policy`` once ``mutation`` is applied.

    ``policy`` itself is left untouched. The returned snapshot always carries
    the next version number, even when the mutation changed nothing.
    """
    changes: Dict[str, object] = {}

    if isinstance(mutation, SetMode):
        changes["mode"] = mutation.mode

    elif isinstance(mutation, AddEntry):
        current = policy.get_list(mutation.list_name)
        pattern = normalize_pattern(mutation.pattern)
        if current.contains(pattern):
            raise DuplicateEntryError(f"'{pattern}' is already in the {current.name.value} list")
        grown = FilterList(name=current.name, entries=current.entries + (pattern,))
        changes = {current.name.value: grown}

    elif isinstance(mutation, RemoveEntry):
        current = policy.get_list(mutation.list_name)
        needle = (mutation.pattern or "").strip().lower()
        kept = tuple(e for e in current.entries if e.lower() != needle)
        changes = {current.name.value: FilterList(name=current.name, entries=kept)}

    elif isinstance(mutation, RenameEntry):
        current = policy.get_list(mutation.list_name)
        old = (mutation.old or "").strip().lower()
        new = normalize_pattern(mutation.new)
        if not current.contains(old):
            raise PolicyUpdateError(f"'{mutation.old}' is not in the {current.name.value} list")
        if new.lower() != old and current.contains(new):
            raise DuplicateEntryError(f"'{new}' is already in the {current.name.value} list")
        renamed = tuple(new if e.lower() == old else e for e in current.entries)
        changes = {current.name.value: FilterList(name=current.name, entries=renamed)}

    elif isinstance(mutation, ReplaceList):
        replaced = build_list(ListName(mutation.list_name), mutation.entries)
        changes = {replaced.name.value: replaced}

    else:
        raise PolicyUpdateError(f"Unsupported mutation: {mutation!r}")

    changes["version"] = policy.version + 1
    return policy.model_copy(update=changes)


class PolicyStore:
    """Publishes immutable policy snapshots.

    Readers take ``current`` once and keep using that reference; writers build
    a whole new snapshot and swap the single attribute. Only writers contend
    for the lock, so a decision never waits on an update.
    """

    def __init__(self, policy: Optional[FilterPolicy] = None):
        self._current = policy or FilterPolicy()
        self._write_lock = threading.Lock()

    @property
    def current(self) -> FilterPolicy:
        return self._current

    def decide(self, target: str) -> Tuple[Decision, FilterPolicy]:
        snapshot = self._current
        return snapshot.decide(target), snapshot

    def update(self, mutation: Mutation) -> FilterPolicy:
        with self._write_lock:
            snapshot = apply_mutation(self._current, mutation)
            self._current = snapshot
        logger.info("Policy updated to version %d: %s", snapshot.version, mutation)
        return snapshot

    def replace(self, policy: FilterPolicy) -> FilterPolicy:
        with self._write_lock:
            # Keep versions increasing so attribution stays unambiguous.
            version = max(policy.version, self._current.version + 1)
            snapshot = policy.model_copy(update={"version": version})
            self._current = snapshot
        return snapshot


def import_list(name: ListName, rows: Iterable[Mapping[str, object]]) -> FilterList:
    """Builds a list from exchange rows, each carrying a ``uri`` field."""
    name = ListName(name)
    patterns: List[str] = []
    seen = set()
    for index, row in enumerate(rows, start=1):
        if not isinstance(row, Mapping) or EXCHANGE_FIELD not in row:
            raise ListImportError(f"Row {index} has no '{EXCHANGE_FIELD}' field")
        value = row[EXCHANGE_FIELD]
        if value is None or not str(value).strip():
            raise ListImportError(f"Row {index} has an empty '{EXCHANGE_FIELD}' field")
        pattern = str(value).strip()
        # Repeated rows collapse into one entry.
        if pattern.lower() not in seen:
            seen.add(pattern.lower())
            patterns.append(pattern)
    try:
        return build_list(name, patterns)
    except PolicyUpdateError as e:
        raise ListImportError(str(e)) from e


def export_list(filter_list: FilterList) -> List[Dict[str, str]]:
    return [{EXCHANGE_FIELD: entry} for entry in filter_list.entries]

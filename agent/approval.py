"""
Approval gate: decides whether an operation runs unattended, is refused
outright, or needs a user prompt.

Toggle polarity is fixed: True means "run without prompting".
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    READ = "read"
    LIST_TOP_LEVEL = "list_top_level"
    LIST_RECURSIVE = "list_recursive"
    WRITE = "write"
    EXECUTE = "execute"


class Decision(str, Enum):
    AUTO_APPROVE = "auto_approve"
    AUTO_DENY = "auto_deny"
    MUST_PROMPT = "must_prompt"


# Non-destructive kinds remember the user's answer per path
PATH_DECISION_KINDS = frozenset({
    OperationKind.READ,
    OperationKind.LIST_TOP_LEVEL,
    OperationKind.LIST_RECURSIVE,
})


def default_toggles() -> Dict[OperationKind, bool]:
    return {
        OperationKind.READ: True,
        OperationKind.LIST_TOP_LEVEL: True,
        OperationKind.LIST_RECURSIVE: True,
        OperationKind.WRITE: False,
        OperationKind.EXECUTE: False,
    }


@dataclass
class ApprovalPolicy:
    """Per-kind auto-approve toggles plus path-level overrides"""
    toggles: Dict[OperationKind, bool] = field(default_factory=default_toggles)
    excluded_files: Set[str] = field(default_factory=set)
    whitelisted_files: Set[str] = field(default_factory=set)

    def __post_init__(self):
        merged = default_toggles()
        merged.update({OperationKind(k): bool(v) for k, v in self.toggles.items()})
        self.toggles = merged
        # Whitelist wins if a stale snapshot carries a path in both sets
        self.excluded_files = set(self.excluded_files) - set(self.whitelisted_files)
        self.whitelisted_files = set(self.whitelisted_files)


PersistFn = Callable[[List[str], List[str]], None]


class ApprovalGate:
    """
    Owns an ApprovalPolicy. Every mutation of the path sets is written through
    to `persist(excluded, whitelisted)` before the call returns.
    """

    def __init__(
        self,
        policy: Optional[ApprovalPolicy] = None,
        persist: Optional[PersistFn] = None,
        normalize: Optional[Callable[[str], str]] = None,
    ):
        self._policy = policy or ApprovalPolicy()
        self._persist = persist
        self._normalize = normalize or (lambda p: p)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def decide(self, kind: OperationKind, path: Optional[str] = None) -> Decision:
        kind = OperationKind(kind)
        with self._lock:
            if path is not None:
                key = self._normalize(path)
                if key in self._policy.whitelisted_files:
                    return Decision.AUTO_APPROVE
                if key in self._policy.excluded_files:
                    return Decision.AUTO_DENY
            if self._policy.toggles.get(kind, False):
                return Decision.AUTO_APPROVE
            return Decision.MUST_PROMPT

    def is_auto_approved(self, kind: OperationKind) -> bool:
        return self._policy.toggles.get(OperationKind(kind), False)

    @property
    def excluded_files(self) -> List[str]:
        with self._lock:
            return sorted(self._policy.excluded_files)

    @property
    def whitelisted_files(self) -> List[str]:
        with self._lock:
            return sorted(self._policy.whitelisted_files)

    def snapshot(self) -> ApprovalPolicy:
        with self._lock:
            return copy.deepcopy(self._policy)

    # ------------------------------------------------------------------
    # Mutations (write-through)
    # ------------------------------------------------------------------

    def record_decision(self, path: str, approved: bool) -> None:
        """Remember the user's answer for `path` and persist both sets."""
        key = self._normalize(path)
        with self._lock:
            if approved:
                self._policy.whitelisted_files.add(key)
                self._policy.excluded_files.discard(key)
            else:
                self._policy.excluded_files.add(key)
                self._policy.whitelisted_files.discard(key)
            self._write_through()
        logger.info(f"Recorded {'whitelist' if approved else 'exclusion'} for {key}")

    def set_excluded(self, paths: List[str]) -> None:
        keys = {self._normalize(p) for p in paths if p}
        with self._lock:
            self._policy.excluded_files = keys
            self._policy.whitelisted_files -= keys
            self._write_through()

    def set_whitelisted(self, paths: List[str]) -> None:
        keys = {self._normalize(p) for p in paths if p}
        with self._lock:
            self._policy.whitelisted_files = keys
            self._policy.excluded_files -= keys
            self._write_through()

    def replace_paths(self, excluded: List[str], whitelisted: List[str]) -> None:
        """Restore both sets at once, e.g. from a history item snapshot."""
        with self._lock:
            self._policy.whitelisted_files = {self._normalize(p) for p in whitelisted if p}
            self._policy.excluded_files = (
                {self._normalize(p) for p in excluded if p} - self._policy.whitelisted_files
            )
            self._write_through()

    def set_toggle(self, kind: OperationKind, value: bool) -> None:
        with self._lock:
            self._policy.toggles[OperationKind(kind)] = bool(value)

    def _write_through(self) -> None:
        if self._persist is not None:
            self._persist(sorted(self._policy.excluded_files), sorted(self._policy.whitelisted_files))

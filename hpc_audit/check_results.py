"""
Result model for a node audit run.

A run produces one CheckResult per check, collected per Category in an
AuditReport. Categories always iterate in declaration order regardless of
the order in which results were added.
"""
from dataclasses import dataclass
from enum import Enum


class Status(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    PARTIAL = "PARTIAL"


class Category(Enum):
    # (key, title shown in the report)
    SYSTEM = ("system", "System")
    CPU = ("cpu", "CPU")
    RAM = ("ram", "RAM")
    STORAGE = ("storage", "NVMe Storage")
    GPU = ("gpu", "GPU")
    ETHERNET = ("ethernet", "Ethernet Network")
    INFINIBAND = ("infiniband", "InfiniBand Network")
    SECURITY = ("security", "Security & Accounts")
    NETWORK_SPEED = ("network_speed", "Network Speed Tests")
    SOFTWARE = ("software", "Software & Packages")
    SERVICES = ("services", "Services & Mounts")
    BENCHMARKS = ("benchmarks", "High-Performance Benchmarks")

    def __init__(self, key, title):
        self.key = key
        self.title = title

    @classmethod
    def from_key(cls, key: str) -> "Category":
        normalized = key.strip().lower().replace("-", "_")
        for category in cls:
            if category.key == normalized:
                return category
        raise ValueError(f"Unknown category: {key}")


@dataclass(frozen=True)
class CheckResult:
    name: str
    command: str
    result: str
    status: Status
    notes: str = ""
    # label of a collapsed <details> block; empty renders the result inline
    collapsed: str = ""
    # header names when result holds tab separated rows
    columns: tuple = ()

    def __post_init__(self):
        # Accept "PASS"/"FAIL"/"PARTIAL" strings, reject anything else
        object.__setattr__(self, "status", Status(self.status))


class AuditReport:
    """Append-only collector of CheckResult records keyed by Category."""

    def __init__(self, hostname="", timestamp=""):
        self.hostname = hostname
        self.timestamp = timestamp
        self._results = {category: [] for category in Category}

    def add(self, category: Category, result: CheckResult) -> CheckResult:
        self._results[category].append(result)
        return result

    def extend(self, category: Category, results) -> None:
        for result in results:
            self.add(category, result)

    def results(self, category: Category) -> tuple:
        return tuple(self._results[category])

    def sections(self):
        """Yield (category, results) for every non-empty category in declaration order."""
        for category in Category:
            if self._results[category]:
                yield category, tuple(self._results[category])

    def all_results(self):
        for category, results in self.sections():
            for result in results:
                yield category, result

    def failed(self):
        return [(c, r) for c, r in self.all_results() if r.status is Status.FAIL]

    def counts(self) -> dict:
        counts = {status: 0 for status in Status}
        for _, result in self.all_results():
            counts[result.status] += 1
        return counts

    def __len__(self):
        return sum(len(v) for v in self._results.values())

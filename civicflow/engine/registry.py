"""Department Registry - versioned, atomically swapped type -> departments mapping"""
import threading
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, TYPE_CHECKING

from ..domain.models import Department
from ..domain.enums import ComplaintType
from ..domain.errors import DepartmentNotFoundError
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from ..repositories.department_repo import DepartmentRepository

logger = get_logger(__name__)


class RegistrySnapshot:
    """Immutable view of the mapping at one version"""

    __slots__ = ("version", "mapping")

    def __init__(self, version: int, mapping: Mapping[ComplaintType, Tuple[Department, ...]]):
        self.version = version
        self.mapping = MappingProxyType(dict(mapping))

    def departments_for(self, complaint_type: ComplaintType) -> Tuple[Department, ...]:
        return self.mapping.get(complaint_type, ())


def order_departments(
    complaint_type: ComplaintType,
    departments: Iterable[Department]
) -> List[Department]:
    """
    Order departments primary first, then by ascending priority

    More than one primary: the lowest priority value among them wins and a
    configuration warning is logged. No primary at all: lowest priority wins.
    Ties on priority break on department_id so the order is repeatable.
    """
    ordered = sorted(departments, key=lambda d: (d.priority, d.department_id))
    if not ordered:
        return []

    primaries = [d for d in ordered if d.is_primary]
    if len(primaries) > 1:
        logger.warning(
            f"Multiple primary departments configured for {complaint_type.value}; "
            f"using {primaries[0].department_id}",
            extra={
                "department_id": primaries[0].department_id,
                "primaries": [d.department_id for d in primaries],
            }
        )
    primary = primaries[0] if primaries else ordered[0]
    return [primary] + [d for d in ordered if d is not primary]


class DepartmentRegistry:
    """
    Read-mostly registry of departments per complaint type

    Readers grab the current snapshot reference and never lock. Writers are
    serialized, build a complete new snapshot and swap the reference, so a
    reader sees either the old or the new mapping, never a mix.
    """

    def __init__(
        self,
        mapping: Optional[Mapping[ComplaintType, Iterable[Department]]] = None,
        repository: Optional["DepartmentRepository"] = None
    ):
        self._write_lock = threading.Lock()
        self._repository = repository
        self._snapshot = RegistrySnapshot(
            1,
            {t: tuple(deps) for t, deps in (mapping or {}).items()}
        )

    @property
    def version(self) -> int:
        return self._snapshot.version

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    # =========================================================================
    # Reads
    # =========================================================================

    def resolve(self, complaint_type: ComplaintType) -> List[Department]:
        """Departments for a type, primary first; empty list means no mapping"""
        snapshot = self._snapshot
        return order_departments(complaint_type, snapshot.departments_for(complaint_type))

    def list_all(self) -> Dict[ComplaintType, List[Department]]:
        snapshot = self._snapshot
        return {
            complaint_type: order_departments(complaint_type, departments)
            for complaint_type, departments in snapshot.mapping.items()
        }

    def get_department(self, department_id: str) -> Department:
        """Look up a routed department by id at read time"""
        for departments in self._snapshot.mapping.values():
            for department in departments:
                if department.department_id == department_id:
                    return department
        raise DepartmentNotFoundError(
            f"Department {department_id} not found",
            details={"department_id": department_id}
        )

    # =========================================================================
    # Writes
    # =========================================================================

    def _swap(self, mapping: Dict[ComplaintType, Tuple[Department, ...]]) -> RegistrySnapshot:
        snapshot = RegistrySnapshot(self._snapshot.version + 1, mapping)
        self._snapshot = snapshot
        logger.info(
            f"Department registry updated to version {snapshot.version}",
            extra={"registry_version": snapshot.version}
        )
        return snapshot

    def upsert(self, complaint_type: ComplaintType, department: Department) -> RegistrySnapshot:
        """Insert or replace one department for a type"""
        with self._write_lock:
            mapping = dict(self._snapshot.mapping)
            existing = [
                d for d in mapping.get(complaint_type, ())
                if d.department_id != department.department_id
            ]
            mapping[complaint_type] = tuple(existing + [department])
            snapshot = self._swap(mapping)
        if self._repository is not None:
            self._repository.save_mapping(complaint_type, department)
        return snapshot

    def remove(self, complaint_type: ComplaintType, department_id: str) -> RegistrySnapshot:
        """Remove a department from one type's mapping"""
        with self._write_lock:
            mapping = dict(self._snapshot.mapping)
            remaining = tuple(
                d for d in mapping.get(complaint_type, ())
                if d.department_id != department_id
            )
            if remaining:
                mapping[complaint_type] = remaining
            else:
                mapping.pop(complaint_type, None)
            snapshot = self._swap(mapping)
        if self._repository is not None:
            self._repository.delete_mapping(complaint_type, department_id)
        return snapshot

    def replace_all(
        self,
        mapping: Mapping[ComplaintType, Iterable[Department]]
    ) -> RegistrySnapshot:
        """Swap in a whole new mapping"""
        with self._write_lock:
            return self._swap({t: tuple(deps) for t, deps in mapping.items()})

    def load_from_repository(self) -> RegistrySnapshot:
        """Hydrate the registry from the attached repository"""
        if self._repository is None:
            raise RuntimeError("No department repository attached")
        return self.replace_all(self._repository.load_mappings())

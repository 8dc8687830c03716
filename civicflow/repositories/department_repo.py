"""Department Repository - persisted complaint type -> department mappings"""
from typing import Dict, List, Optional
from pymongo.collection import Collection

from .mongo_client import get_collection
from ..domain.models import Department
from ..domain.enums import ComplaintType
from ..utils.logger import get_logger

logger = get_logger(__name__)


class DepartmentRepository:
    """Mapping documents are {complaint_type, department_id, ...Department fields}"""

    def __init__(self, collection: Optional[Collection] = None):
        self._mappings = collection if collection is not None else get_collection("department_mappings")

    def load_mappings(self) -> Dict[ComplaintType, List[Department]]:
        """Read every mapping; unknown complaint types are skipped with a warning"""
        mapping: Dict[ComplaintType, List[Department]] = {}
        for doc in self._mappings.find({}):
            doc.pop("_id", None)
            raw_type = doc.pop("complaint_type", None)
            try:
                complaint_type = ComplaintType(raw_type)
            except ValueError:
                logger.warning(f"Ignoring mapping for unknown complaint type {raw_type!r}")
                continue
            mapping.setdefault(complaint_type, []).append(Department.model_validate(doc))

        logger.info(f"Loaded department mappings for {len(mapping)} complaint types")
        return mapping

    def save_mapping(self, complaint_type: ComplaintType, department: Department) -> None:
        doc = department.model_dump()
        doc["complaint_type"] = complaint_type.value
        self._mappings.replace_one(
            {"complaint_type": complaint_type.value, "department_id": department.department_id},
            doc,
            upsert=True
        )

    def delete_mapping(self, complaint_type: ComplaintType, department_id: str) -> None:
        self._mappings.delete_one(
            {"complaint_type": complaint_type.value, "department_id": department_id}
        )

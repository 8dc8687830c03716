"""Department Client - work-order creation over HTTP"""
from typing import Optional
import httpx

from ..config.settings import settings
from ..domain.models import Department, WorkOrderRequest
from ..domain.errors import DepartmentUnavailableError, MalformedResponseError
from ..utils.logger import get_logger, get_correlation_id

logger = get_logger(__name__)


class HttpDepartmentEndpoint:
    """
    Department endpoint collaborator backed by httpx

    `Department.endpoint_ref` is either an absolute URL or a path relative to
    settings.department_endpoint_base_url. The routing idempotency key is sent
    as the Idempotency-Key header so a department can de-duplicate a retried
    request whose first response was lost.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = (base_url or settings.department_endpoint_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.department_endpoint_timeout_seconds
        self._client = client

    def _url_for(self, department: Department) -> str:
        ref = department.endpoint_ref
        if ref.startswith("http://") or ref.startswith("https://"):
            return ref
        return f"{self.base_url}/{ref.lstrip('/')}"

    async def create_work_order(self, department: Department, request: WorkOrderRequest) -> str:
        """POST the work order and return its id"""
        url = self._url_for(department)
        headers = {"Idempotency-Key": request.idempotency_key}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-Id"] = correlation_id

        try:
            if self._client is not None:
                response = await self._client.post(
                    url, json=request.model_dump(mode="json"), headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        url, json=request.model_dump(mode="json"), headers=headers
                    )
        except httpx.TimeoutException as e:
            raise DepartmentUnavailableError(
                f"Department {department.department_id} timed out",
                details={"department_id": department.department_id, "url": url}
            ) from e
        except httpx.HTTPError as e:
            raise DepartmentUnavailableError(
                f"Department {department.department_id} unreachable: {e}",
                details={"department_id": department.department_id, "url": url}
            ) from e

        if response.status_code >= 400:
            raise DepartmentUnavailableError(
                f"Department {department.department_id} answered {response.status_code}",
                details={
                    "department_id": department.department_id,
                    "status_code": response.status_code,
                }
            )

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"Department {department.department_id} returned invalid JSON",
                details={"department_id": department.department_id}
            ) from e

        work_order_id = body.get("work_order_id") if isinstance(body, dict) else None
        if not isinstance(work_order_id, str) or not work_order_id:
            raise MalformedResponseError(
                f"Department {department.department_id} response has no work_order_id",
                details={"department_id": department.department_id}
            )

        logger.info(
            f"Work order {work_order_id} created at {department.department_id}",
            extra={
                "complaint_id": request.complaint_id,
                "department_id": department.department_id,
                "work_order_id": work_order_id,
            }
        )
        return work_order_id

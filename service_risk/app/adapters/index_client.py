"""
Index query executor.
"""

from typing import Any, Dict, Optional, Type, TypeVar, Union

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from shared.logging import get_logger
from shared.errors import (
    IndexQueryError,
    MalformedIndexResponse,
    TransportFailure,
    TransportTimeout,
    UpstreamClientError,
    UpstreamServerError,
)


ModelT = TypeVar("ModelT", bound=BaseModel)

DEFAULT_INDEX_TIMEOUT = 30.0


class IndexQueryExecutor:
    """Performs a single query+variables call against the index.

    Transport and HTTP failures are mapped onto the shared error taxonomy.
    No retries happen here; the gateway decides what a failure means.
    """

    def __init__(
        self,
        index_url: str,
        timeout: float = DEFAULT_INDEX_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.index_url = index_url
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self.logger = get_logger("risk.index_client")

    async def execute(
        self,
        query_text: str,
        variables: Optional[Dict[str, Any]] = None,
        response_model: Optional[Type[ModelT]] = None,
    ) -> Union[Dict[str, Any], ModelT]:
        """POST the query and return its ``data`` object, validated when a model is given."""
        payload = {"query": query_text, "variables": variables or {}}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.index_url, json=payload, headers=self.headers)
        except httpx.TimeoutException as e:
            self.logger.warning("Index request timed out", timeout=self.timeout, error=str(e))
            raise TransportTimeout(
                f"No response from index within {self.timeout}s",
                details={"timeout": self.timeout},
            )
        except httpx.HTTPError as e:
            self.logger.error("Index transport error", error=str(e))
            raise TransportFailure(
                f"Index transport failure: {e}",
                details={"error": str(e)},
            )

        data = self._unwrap(response)

        if response_model is None:
            return data

        try:
            return response_model.model_validate(data)
        except PydanticValidationError as e:
            self.logger.error(
                "Index payload failed validation",
                model=response_model.__name__,
                errors=e.error_count(),
            )
            raise MalformedIndexResponse(
                f"Index payload does not match {response_model.__name__}",
                details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
            )

    def _unwrap(self, response: httpx.Response) -> Dict[str, Any]:
        """Map the HTTP response onto data or a typed error."""
        status = response.status_code

        if 400 <= status < 500:
            self.logger.warning("Index rejected request", status_code=status, response=response.text[:500])
            raise UpstreamClientError(
                f"Index rejected request with status {status}",
                details={"status_code": status, "body": response.text[:500]},
            )

        if status >= 500:
            self.logger.error("Index server error", status_code=status, response=response.text[:500])
            raise UpstreamServerError(
                f"Index failed with status {status}",
                details={"status_code": status, "body": response.text[:500]},
            )

        try:
            body = response.json()
        except ValueError:
            raise MalformedIndexResponse("Index response is not JSON", details={"status_code": status})

        if not isinstance(body, dict):
            raise MalformedIndexResponse("Index response is not an object", details={"status_code": status})

        if body.get("errors"):
            self.logger.warning("Index query returned errors", errors=body["errors"])
            raise IndexQueryError(
                "Index query returned errors",
                details={"errors": body["errors"]},
            )

        data = body.get("data")
        if not isinstance(data, dict):
            raise MalformedIndexResponse("Index response has no data object", details={"status_code": status})

        return data

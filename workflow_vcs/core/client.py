"""
HTTP Client Layer - Singleton Pattern
Async n8n REST client used as the document source for snapshots and merges.
"""
import httpx
import json
from typing import Any, Dict, Optional
from functools import wraps

from pydantic import ValidationError as PydanticValidationError

from workflow_vcs.core.config import settings
from workflow_vcs.core.errors import (
    EngineUnavailableError,
    NotFoundError,
    ValidationError,
    WorkflowVCSError,
)
from workflow_vcs.core.logging import engine_logger as logger
from workflow_vcs.models.schemas import WorkflowDocument
from workflow_vcs.models.validation import validate_document


class N8NClient:
    """
    Singleton HTTP Client for n8n API.
    Manages connection lifecycle, headers, and error handling.
    """
    _instance: Optional["N8NClient"] = None
    _client: Optional[httpx.AsyncClient] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._client is None:
            self._base_url = settings.api_url
            self._headers = {
                "X-N8N-API-KEY": settings.n8n_api_key,
                "Content-Type": "application/json",
                "Accept": "application/json"
            }
            self._timeout = httpx.Timeout(settings.http_timeout)
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers,
                timeout=self._timeout
            )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def close(self):
        """Close the HTTP client connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
            N8NClient._instance = None

    async def request(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[Dict] = None,
        params: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """
        Execute an HTTP request with standardized error handling.
        404 becomes NotFoundError; every other failure is EngineUnavailableError.
        """
        try:
            response = await self._client.request(
                method=method,
                url=endpoint.lstrip("/"),
                json=json_data,
                params=params
            )
            response.raise_for_status()
            return response.json()

        except httpx.HTTPStatusError as e:
            try:
                error_detail = e.response.json()
            except ValueError:
                error_detail = e.response.text
            if e.response.status_code == 404:
                raise NotFoundError(
                    f"n8n resource not found: {endpoint}",
                    context=str(error_detail)
                )
            logger.error(f"n8n API error {e.response.status_code} on {method} {endpoint}")
            raise EngineUnavailableError(
                f"n8n API Error ({e.response.status_code}): {error_detail}",
                context=str(e)
            )

        except httpx.RequestError as e:
            logger.error(f"n8n unreachable on {method} {endpoint}: {e}")
            raise EngineUnavailableError(
                "Network/Connection Failure",
                context=str(e)
            )

    # Convenience methods
    async def get(self, endpoint: str, params: Optional[Dict] = None) -> Dict[str, Any]:
        return await self.request("GET", endpoint, params=params)

    async def post(self, endpoint: str, json_data: Optional[Dict] = None) -> Dict[str, Any]:
        return await self.request("POST", endpoint, json_data=json_data)

    async def put(self, endpoint: str, json_data: Optional[Dict] = None) -> Dict[str, Any]:
        return await self.request("PUT", endpoint, json_data=json_data)

    # Document source operations
    async def get_document(self, workflow_id: str) -> WorkflowDocument:
        """Pull the live workflow and validate it at the boundary."""
        logger.info(f"Pulling workflow {workflow_id} from n8n")
        data = await self.get(f"/workflows/{workflow_id}")
        try:
            document = WorkflowDocument.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"n8n returned a malformed workflow '{workflow_id}'", context=str(e))
        return validate_document(document)

    async def update_document(self, workflow_id: str, document: WorkflowDocument) -> WorkflowDocument:
        """
        Push a workflow back to n8n.
        The PUT body only carries fields n8n accepts; activation is toggled separately.
        """
        validate_document(document)
        logger.info(f"Pushing workflow {workflow_id} to n8n ({len(document.nodes)} nodes)")
        payload = {
            "name": document.name,
            "nodes": [_node_payload(node) for node in document.nodes],
            "connections": document.connections,
            "settings": document.settings
        }
        data = await self.put(f"/workflows/{workflow_id}", json_data=payload)

        if bool(data.get("active", False)) != document.active:
            action = "activate" if document.active else "deactivate"
            logger.info(f"Toggling workflow {workflow_id}: {action}")
            data = await self.post(f"/workflows/{workflow_id}/{action}")

        return WorkflowDocument.model_validate(data)


def _node_payload(node) -> Dict[str, Any]:
    data = node.model_dump(mode="json")
    if not data.get("credentials"):
        data.pop("credentials", None)
    return data


def get_client() -> N8NClient:
    """Factory function to get the singleton client instance."""
    return N8NClient()


def safe_tool(func):
    """
    Decorator for MCP tools.
    Converts raised errors into a structured JSON failure instead of crashing.
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except WorkflowVCSError as e:
            logger.warning(f"{func.__name__} failed: {e.error_type}: {e.message}")
            return json.dumps(e.to_dict(), indent=2)
        except (PydanticValidationError, ValueError) as e:
            return json.dumps({
                "success": False,
                "status": "error",
                "code": 400,
                "error_type": "validation_error",
                "message": f"Validation Error: {str(e)}"
            }, indent=2)
        except Exception as e:
            logger.error(f"Unhandled error in {func.__name__}: {e}")
            return json.dumps({
                "success": False,
                "status": "fatal_error",
                "code": 500,
                "error_type": "internal_error",
                "message": f"Internal MCP Error: {str(e)}"
            }, indent=2)
    return wrapper

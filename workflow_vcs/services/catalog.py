"""
Node-Type Catalog
Read-only lookup of node type schemas, keyed by type name.
Only used for default-parameter suggestions; diff and merge never need it.
"""
import json
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from workflow_vcs.core.config import settings
from workflow_vcs.core.errors import NotFoundError
from workflow_vcs.core.logging import gateway_logger as logger
from workflow_vcs.models.schemas import WorkflowNode


class NodeTypeSchema(BaseModel):
    """Subset of an n8n node description that matters for suggestions."""
    name: str
    display_name: Optional[str] = None
    version: float = 1.0
    description: Optional[str] = None
    defaults: Dict[str, Any] = Field(default_factory=dict)


class NodeTypeCatalog:
    def __init__(self, types: Optional[List[NodeTypeSchema]] = None):
        self._types: Dict[str, NodeTypeSchema] = {t.name: t for t in types or []}

    @classmethod
    def from_data(cls, data: Union[List[Dict[str, Any]], Dict[str, Dict[str, Any]]]) -> "NodeTypeCatalog":
        """Accept a list of schemas or a {type_name: schema} mapping."""
        if isinstance(data, dict):
            data = [{"name": name, **schema} for name, schema in data.items()]
        return cls([NodeTypeSchema.model_validate(item) for item in data])

    @classmethod
    def from_file(cls, path: str) -> "NodeTypeCatalog":
        with open(path, "r", encoding="utf-8") as f:
            catalog = cls.from_data(json.load(f))
        logger.info(f"Loaded {len(catalog)} node types from {path}")
        return catalog

    def __len__(self) -> int:
        return len(self._types)

    def __contains__(self, type_name: str) -> bool:
        return type_name in self._types

    def lookup_type(self, type_name: str) -> NodeTypeSchema:
        schema = self._types.get(type_name)
        if schema is None:
            raise NotFoundError(f"Node type '{type_name}' is not in the catalog")
        return schema

    def suggest_parameters(self, node: WorkflowNode) -> Dict[str, Any]:
        """Catalog defaults the node does not set yet. Unknown types suggest nothing."""
        if node.type not in self:
            return {}
        defaults = self.lookup_type(node.type).defaults
        return {key: value for key, value in defaults.items() if key not in node.parameters}


def build_catalog() -> NodeTypeCatalog:
    if settings.node_catalog_path:
        return NodeTypeCatalog.from_file(settings.node_catalog_path)
    return NodeTypeCatalog()

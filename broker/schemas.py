from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ModelActionRequest(BaseModel):
    model_id: str
    backend: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class CustomModelRequest(BaseModel):
    hugging_face_id: str
    name: Optional[str] = None
    capabilities: List[str] = Field(default_factory=list)
    backend: str = "transformers"
    pipeline_task: Optional[str] = None


class DefaultModelRequest(BaseModel):
    model_id: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class FlowExecuteRequest(BaseModel):
    flow: Optional[Dict[str, Any]] = None
    flow_id: Optional[str] = None
    inputs: Dict[str, Any] = Field(default_factory=dict)


class PlanRequest(BaseModel):
    request: str
    files: List[str] = Field(default_factory=list)
    tier: Optional[str] = None

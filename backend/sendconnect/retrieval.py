from __future__ import annotations

import logging
from typing import Any, Mapping

from sendconnect.errors import ResponseShapeError
from sendconnect.llama_cloud import LlamaCloudClient
from sendconnect.models import Passage

logger = logging.getLogger("sendconnect.retrieval")


def _node_metadata(node: Mapping[str, Any]) -> Mapping[str, Any]:
    for key in ("extra_info", "metadata"):
        value = node.get(key)
        if isinstance(value, Mapping) and value:
            return value
    return {}


def _coerce_score(value: object) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    return 0.0


def _page_label(metadata: Mapping[str, Any]) -> int | str | None:
    value = metadata.get("page_label")
    if value is None or value == "":
        return None
    if isinstance(value, (int, str)):
        return value
    return str(value)


def normalize_retrieval_node(item: object, index: int) -> Passage:
    """Convert one retrieval result into a Passage.

    Two shapes are accepted: ``{"node": {"text", "extra_info"}, "score"}`` as
    returned by the pipeline retrieve endpoint, and the flat
    ``{"text", "metadata", "score"}`` variant.
    """
    if not isinstance(item, Mapping):
        raise ResponseShapeError(f"Retrieval node {index} is not an object: {type(item).__name__}")

    node = item.get("node")
    if isinstance(node, Mapping):
        source = node
    elif "text" in item:
        source = item
    else:
        keys = ", ".join(sorted(str(key) for key in item.keys())) or "none"
        raise ResponseShapeError(f"Retrieval node {index} has an unrecognized shape (keys: {keys})")

    text = source.get("text")
    metadata = _node_metadata(source)
    file_name = metadata.get("file_name")
    return Passage(
        text=text if isinstance(text, str) else "",
        score=_coerce_score(item.get("score", source.get("score"))),
        page_label=_page_label(metadata),
        file_name=str(file_name) if file_name else None,
    )


def normalize_retrieval_payload(payload: object) -> list[Passage]:
    if not isinstance(payload, Mapping):
        raise ResponseShapeError("Retrieval response is not a JSON object.")
    nodes = payload.get("retrieval_nodes")
    if nodes is None:
        return []
    if not isinstance(nodes, list):
        raise ResponseShapeError("Retrieval response field 'retrieval_nodes' is not a list.")
    return [normalize_retrieval_node(item, index) for index, item in enumerate(nodes, start=1)]


class RetrievalGateway:
    def __init__(self, *, llama_cloud: LlamaCloudClient) -> None:
        self._llama_cloud = llama_cloud

    def retrieve_raw(self, pipeline_id: str, query: str, top_k: int) -> Any:
        return self._llama_cloud.retrieve(pipeline_id, query=query, top_k=top_k)

    def retrieve(self, pipeline_id: str, query: str, top_k: int) -> list[Passage]:
        passages = normalize_retrieval_payload(self.retrieve_raw(pipeline_id, query, top_k))
        logger.info(
            "retrieval_completed",
            extra={
                "event": "retrieval_completed",
                "pipeline_id": pipeline_id,
                "top_k": top_k,
                "passages": len(passages),
            },
        )
        return passages

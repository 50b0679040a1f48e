import pytest

from sendconnect.errors import ResponseShapeError
from sendconnect.models import Passage
from sendconnect.retrieval import normalize_retrieval_node, normalize_retrieval_payload


def test_wrapped_node_shape_is_normalized() -> None:
    item = {
        "node": {"text": "Rest breaks", "extra_info": {"page_label": 9, "file_name": "jcq.pdf"}},
        "score": 0.81,
    }

    assert normalize_retrieval_node(item, 1) == Passage(
        text="Rest breaks", score=0.81, page_label=9, file_name="jcq.pdf"
    )


def test_flat_node_shape_reads_metadata() -> None:
    item = {"text": "Readers", "score": 0.3, "metadata": {"page_label": "12", "file_name": "jcq.pdf"}}

    assert normalize_retrieval_node(item, 1) == Passage(text="Readers", score=0.3, page_label="12", file_name="jcq.pdf")


def test_wrapped_node_falls_back_to_metadata_and_defaults() -> None:
    item = {"node": {"text": None, "metadata": {"file_name": "a.pdf"}}}

    passage = normalize_retrieval_node(item, 1)

    assert passage == Passage(text="", score=0.0, page_label=None, file_name="a.pdf")


@pytest.mark.parametrize(
    "item",
    [
        "just text",
        ["node"],
        {"content": "no text field"},
    ],
)
def test_unrecognized_node_shapes_raise(item) -> None:
    with pytest.raises(ResponseShapeError):
        normalize_retrieval_node(item, 3)


def test_payload_without_retrieval_nodes_is_empty() -> None:
    assert normalize_retrieval_payload({}) == []
    assert normalize_retrieval_payload({"retrieval_nodes": None}) == []


@pytest.mark.parametrize("payload", [[], "oops", {"retrieval_nodes": {"node": {}}}])
def test_malformed_payloads_raise(payload) -> None:
    with pytest.raises(ResponseShapeError):
        normalize_retrieval_payload(payload)


def test_payload_preserves_service_order() -> None:
    payload = {
        "retrieval_nodes": [
            {"node": {"text": "low"}, "score": 0.1},
            {"node": {"text": "high"}, "score": 0.9},
        ]
    }

    assert [passage.text for passage in normalize_retrieval_payload(payload)] == ["low", "high"]

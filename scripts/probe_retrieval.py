#!/usr/bin/env python3
"""Run a diagnostic retrieval against a Llama Cloud pipeline.

Prints the raw response structure and the normalized passages so the metadata
available for citations (page labels, file names, scores) can be inspected.
Credentials come from the same environment/.env settings as the API.
"""

from __future__ import annotations

import argparse
import json
import sys

from sendconnect.config import Settings
from sendconnect.llama_cloud import LlamaCloudClient
from sendconnect.retrieval import RetrievalGateway, normalize_retrieval_payload
from sendconnect.synthesis import format_context


DEFAULT_QUERY = "What are the rules for extra time?"


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--pipeline-id", required=True, help="Llama Cloud pipeline id to query.")
    parser.add_argument("--query", default=DEFAULT_QUERY, help="Natural-language query.")
    parser.add_argument("--top-k", type=int, default=None, help="Number of passages (default: DIAGNOSTIC_TOP_K).")
    parser.add_argument("--context", action="store_true", help="Also print the prompt context block.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = Settings()
    missing = settings.missing_retrieval_settings()
    if missing:
        print(f"Missing required environment variables: {', '.join(missing)}", file=sys.stderr)
        return 2

    top_k = args.top_k or settings.diagnostic_top_k
    client = LlamaCloudClient.from_settings(settings)
    try:
        gateway = RetrievalGateway(llama_cloud=client)
        raw = gateway.retrieve_raw(args.pipeline_id, args.query, top_k)
        nodes = raw.get("retrieval_nodes") if isinstance(raw, dict) else None
        print(f"Pipeline: {args.pipeline_id}")
        print(f"Query: {args.query!r}")
        print(f"Retrieved {len(nodes) if isinstance(nodes, list) else 0} nodes\n")
        if isinstance(nodes, list) and nodes:
            print("=== FIRST NODE (raw) ===")
            print(json.dumps(nodes[0], indent=2, ensure_ascii=False)[:4000])

        passages = normalize_retrieval_payload(raw)
        for index, passage in enumerate(passages, start=1):
            preview = passage.text.strip().replace("\n", " ")[:160]
            print(f"\n[{index}] page={passage.page_label} file={passage.file_name} score={passage.score:.4f}")
            print(f"    {preview}")
        if args.context and passages:
            print("\n=== PROMPT CONTEXT ===")
            print(format_context(passages))
    except Exception as exc:
        print(f"Query failed: {exc}", file=sys.stderr)
        return 1
    finally:
        client.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from graph_foundry.errors import GraphFoundryError
from graph_foundry.settings import settings


def _configure_logging() -> None:
    level = (settings.log_level or "INFO").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def _parse_metadata(pairs: list[str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise SystemExit(f"--metadata expects key=value, got {pair!r}")
        out[key] = value
    return out


def _build_service(args: argparse.Namespace):
    from graph_foundry.graph_service.service import GraphService
    from graph_foundry.knowledge_graph.completion import build_completion_client
    from graph_foundry.knowledge_graph.documents import InMemoryDocumentStore, JsonlDocumentStore
    from graph_foundry.knowledge_graph.sqlite_store import SQLiteGraphStore

    docs_path = getattr(args, "documents", None) or settings.documents_path
    documents = JsonlDocumentStore(docs_path) if docs_path else InMemoryDocumentStore()
    store = SQLiteGraphStore(args.db_path or settings.sqlite_path)
    return GraphService(store, documents, build_completion_client(settings)), documents


def _selection(args: argparse.Namespace, documents) -> tuple[dict | None, list[str] | None]:
    metadata = _parse_metadata(args.metadata)
    ids = list(args.document_id) or None
    if metadata:
        return {"metadata": metadata}, ids
    if ids is None:
        ids = documents.document_ids()
    return None, ids


def _load_prompts(path: str | None) -> dict | None:
    if not path:
        return None
    return json.loads(Path(path).read_text(encoding="utf-8"))


def cmd_version() -> int:
    from graph_foundry import __version__

    print(__version__)
    return 0


async def _run_build(args: argparse.Namespace, *, update: bool) -> int:
    service, documents = _build_service(args)
    flt, ids = _selection(args, documents)
    async with service:
        if update:
            await service.update_graph(
                args.scope,
                args.name,
                additional_document_filter=flt,
                additional_document_ids=ids,
                prompt_overrides=_load_prompts(args.prompts),
            )
        else:
            await service.create_graph(
                args.scope,
                args.name,
                document_filter=flt,
                document_ids=ids,
                prompt_overrides=_load_prompts(args.prompts),
            )
        await service.wait_idle()
    status = service.get_graph_status(args.scope, args.name)
    _print(status)
    return 0 if status["status"] == "completed" else 1


def cmd_build(args: argparse.Namespace) -> int:
    _configure_logging()
    return asyncio.run(_run_build(args, update=False))


def cmd_update(args: argparse.Namespace) -> int:
    _configure_logging()
    return asyncio.run(_run_build(args, update=True))


def cmd_status(args: argparse.Namespace) -> int:
    _configure_logging()
    service, _ = _build_service(args)
    _print(service.get_graph_status(args.scope, args.name))
    return 0


def cmd_query(args: argparse.Namespace) -> int:
    _configure_logging()
    service, _ = _build_service(args)
    _print(
        service.query_graph(
            args.scope,
            args.query_type,
            list(args.start_node),
            name=args.name,
            max_depth=args.max_depth,
        )
    )
    return 0


def cmd_serve(_args: argparse.Namespace) -> int:
    from graph_foundry.graph_service.server import main

    main()
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="graph-foundry")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("version").set_defaults(func=lambda _a: cmd_version())

    def common(sp: argparse.ArgumentParser, *, name_required: bool = True) -> None:
        sp.add_argument("--scope", default="default")
        sp.add_argument("--name", required=name_required, default=None)
        sp.add_argument("--db-path", default=None, help="SQLite graph store (default from settings)")

    for cmd, func, help_ in (
        ("build", cmd_build, "Create a graph from a JSONL document file and wait for it"),
        ("update", cmd_update, "Add new documents to an existing graph and wait for it"),
    ):
        sp = sub.add_parser(cmd, help=help_)
        common(sp)
        sp.add_argument("--documents", required=True, help="JSONL file of documents")
        sp.add_argument("--document-id", action="append", default=[], help="Restrict to these document ids")
        sp.add_argument("--metadata", action="append", default=[], help="key=value document filter")
        sp.add_argument("--prompts", default=None, help="JSON file with prompt overrides")
        sp.set_defaults(func=func)

    st = sub.add_parser("status")
    common(st)
    st.set_defaults(func=cmd_status)

    q = sub.add_parser("query")
    common(q, name_required=False)
    q.add_argument("query_type", choices=["list_entities", "entity", "path", "subgraph"])
    q.add_argument("start_node", nargs="+")
    q.add_argument("--max-depth", type=int, default=None)
    q.set_defaults(func=cmd_query)

    sub.add_parser("serve").set_defaults(func=cmd_serve)

    return p


def app(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        rc = args.func(args)
    except GraphFoundryError as e:
        print(f"error: {e.message}", file=sys.stderr)
        rc = 1
    raise SystemExit(rc)


if __name__ == "__main__":
    app()

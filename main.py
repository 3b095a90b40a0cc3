#!/usr/bin/env python3
"""
Process Network Core — CLI Runner
===================================
Load a network directory (or build the reference network) → print render
order and statistics → resolve, query and aggregate properties → export.

Usage:
  # Reference CO2 network with the built-in block schema
  python main.py --reference

  # Load a network directory and resolve one property for one block
  python main.py --network ./networks/teesside --resolve pressure --block branch-2/blocks/2

  # Query paths (repeatable)
  python main.py --reference --query "branch-3/blocks/1:2[quantity>=2]" --query "edges[target=branch-3]"

  # What would a group-level default for electrical_power affect?
  python main.py --reference --aggregate electrical_power --scope group --path group-1

  # Re-export a loaded network (idempotent; only changed files are written)
  python main.py --network ./networks/teesside --export ./networks/teesside-copy
"""

import sys
import json
import time
import argparse
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path

from loguru import logger

from network_graph.builder import ReferenceNetworkBuilder, reference_registry
from network_graph.errors import NetworkError
from network_graph.ontology import BlockPath, Scope, ScopeRef, as_scope_ref
from network_graph.session import NetworkSession, SessionConfig
from scope_resolution.validation import check_block_values

LOG_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}"


def configure_logging(level: str = "INFO"):
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)


def to_jsonable(value):
    """Plain JSON form of model objects returned by the resolver and queries."""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, BlockPath):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value):
        return {k: to_jsonable(v) for k, v in asdict(value).items()}
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def emit(title: str, value):
    logger.info(f"{title}:")
    print(json.dumps(to_jsonable(value), indent=2, default=str))


def scope_target(scope: str, path: str) -> ScopeRef:
    scope = Scope(scope)
    if scope == Scope.GLOBAL:
        return ScopeRef.global_()
    if scope == Scope.BLOCK:
        return as_scope_ref(path)
    return ScopeRef(scope, path)


def open_session(args) -> NetworkSession:
    config = SessionConfig(
        storage_dir=args.storage_dir,
        on_parent_deleted=args.on_parent_deleted,
        schema_path=args.schema,
    )
    registry = None if args.schema else reference_registry()
    session = NetworkSession(config, registry=registry)

    if args.network:
        session.load_directory(args.network, force_reload=True)
    elif args.reference:
        session.graph.clear()
        ReferenceNetworkBuilder(session.graph).build_reference_network()
        session.network_id = "reference"
    return session


def print_overview(session: NetworkSession):
    stats = session.graph.stats()
    logger.info("━" * 60)
    logger.info(f"NETWORK: {session.network_id or '(unsaved)'}")
    logger.info("━" * 60)
    logger.info(f"  Branches:         {stats['branches']}")
    logger.info(f"  Groups:           {stats['groups']}")
    logger.info(f"  Blocks:           {stats['blocks']}")
    logger.info(f"  Edges:            {stats['edges']}")
    logger.info(f"  Geographic:       {stats['geographic']}")
    logger.info(f"  Images:           {stats['images']}")
    logger.info(f"  Global defaults:  {stats['defaults']}")
    logger.info(f"  ─────────────────────────")
    logger.info(f"  TOTAL NODES:      {stats['total_nodes']}")
    logger.info("")
    logger.info("Render order:")
    for node in session.graph.ordered_nodes():
        parent = f"  (in {node.parent_id})" if node.parent_id else ""
        logger.info(f"  [{node.depth:>2}] {node.kind.value: <18} {node.id}{parent}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Process network core: graph model, scope resolution and query paths",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --reference                                   # demo network
  python main.py --network ./net --query "branch-1/blocks"     # query a loaded network
  python main.py --reference --aggregate length --scope global # global default impact
        """,
    )

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--network", "-n", type=str,
                        help="Network directory (config.json + one <id>.json per node)")
    source.add_argument("--reference", action="store_true",
                        help="Build the reference CO2 transport network")

    parser.add_argument("--schema", type=str,
                        help="Block schema JSON file (default: built-in reference schema)")
    parser.add_argument("--storage-dir", type=str,
                        help="Persist the session's collections under this directory")
    parser.add_argument("--on-parent-deleted", choices=["orphan", "cascade"], default="orphan",
                        help="Fate of children when their group is deleted (default: orphan)")
    parser.add_argument("--resolve", type=str, metavar="PROP",
                        help="Resolve a property for --block")
    parser.add_argument("--block", type=str, metavar="PATH",
                        help="Block path, e.g. branch-1/blocks/0")
    parser.add_argument("--check", type=str, metavar="PATH",
                        help="Check every value visible at a block against its schema")
    parser.add_argument("--query", "-q", action="append", default=[],
                        help="Query path (repeatable)")
    parser.add_argument("--aggregate", type=str, metavar="PROP",
                        help="Aggregate the impact of editing PROP at --scope/--path")
    parser.add_argument("--scope", choices=[s.value for s in Scope], default="global",
                        help="Scope for --aggregate (default: global)")
    parser.add_argument("--path", type=str, default=None,
                        help="Group/branch id or block path for --scope")
    parser.add_argument("--export", "-o", type=str,
                        help="Write the network as a directory of JSON records")
    parser.add_argument("--log-level", default="INFO",
                        help="Log level (default: INFO)")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if args.resolve and not args.block:
        parser.error("--resolve needs --block")
    if args.aggregate and args.scope != "global" and not args.path:
        parser.error(f"--scope {args.scope} needs --path")

    start_time = time.time()
    try:
        session = open_session(args)
        print_overview(session)

        if args.resolve:
            resolved = session.resolver.resolve(args.resolve, args.block)
            if resolved is None:
                logger.warning(f"{args.resolve!r} is not defined at any scope for {args.block}")
            emit(f"Resolved {args.resolve} at {args.block}", resolved)

        if args.check:
            emit(f"Value checks for {args.check}", check_block_values(session.resolver, args.check))

        for query in args.query:
            emit(f"Query {query}", session.run_query(query))

        if args.aggregate:
            target = scope_target(args.scope, args.path)
            aggregate = session.resolver.aggregate(args.aggregate, target)
            logger.info(aggregate.summary())
            emit(f"Aggregate {args.aggregate} at {target}", aggregate)

        if args.export:
            changed = session.save_directory(Path(args.export))
            logger.info(f"Export complete: {len(changed)} file(s) changed in {Path(args.export).absolute()}")
    except (NetworkError, KeyError, ValueError) as exc:
        logger.error(f"{type(exc).__name__}: {exc}")
        return 1

    logger.info(f"Completed in {time.time() - start_time:.2f}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())

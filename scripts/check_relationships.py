#!/usr/bin/env python3
"""
Consistency check for the relationship store.

Loads every live edge, audits monogamy / acyclicity / self-edges on the
stored data, and optionally expires overdue proposals.

Usage:
    # Audit the configured store
    RELGRAPH_STORE_DB_PATH=/var/lib/bot/relationships.db python scripts/check_relationships.py

    # Audit and expire overdue proposals
    python scripts/check_relationships.py --db /tmp/relationships.db --expire

    # Show one user's full history
    python scripts/check_relationships.py --history 123456789012345678
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from relationship_service.config import RelationshipSettings, StoreSettings
from relationship_service.exceptions import RelationshipError
from relationship_service.graph.audit import audit_edges
from relationship_service.service import RelationshipService

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def run(args: argparse.Namespace) -> int:
    settings = RelationshipSettings()
    if args.db:
        settings.store = StoreSettings(db_path=Path(args.db))
    settings.mutation.sweeper_enabled = False

    service = RelationshipService.from_settings(settings)
    await service.start()
    try:
        edges = await service.store.load_all_active_edges()
        report = audit_edges(edges)

        logger.info("=" * 60)
        logger.info(f"Store: {settings.store.db_path}")
        logger.info(f"Known users: {len(service.identity):,}")
        logger.info(f"Live edges: {len(edges):,}")
        logger.info(f"Pending proposals: {len(service.graph.pending_edges()):,}")
        logger.info("=" * 60)

        if report.ok:
            logger.info("✓ All relationship invariants hold")
        else:
            for edge_id in report.self_edges:
                logger.error(f"Self edge: {edge_id}")
            for node, count in report.multiple_partners.items():
                logger.error(f"Node {node} has {count} active partnerships")
            if report.cycle_nodes:
                logger.error(f"Parentage cycle through nodes: {report.cycle_nodes}")

        if args.expire:
            expired = await service.sweeper.sweep_once()
            logger.info(f"Expired {expired} overdue proposal(s)")

        if args.history is not None:
            for edge in await service.history(args.history):
                logger.info(
                    f"  #{edge.id} {edge.kind.value:<11} {service.identity.lookup(edge.source)} -> "
                    f"{service.identity.lookup(edge.target)} [{edge.status.value}"
                    f"{'/' + edge.dissolved_reason.value if edge.dissolved_reason else ''}]"
                )

        return 0 if report.ok else 1
    except RelationshipError as e:
        logger.error(f"Check failed: {e}")
        return 2
    finally:
        await service.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Audit the relationship store")
    parser.add_argument("--db", help="SQLite store path (defaults to RELGRAPH_STORE_DB_PATH)")
    parser.add_argument("--expire", action="store_true", help="Expire overdue pending proposals")
    parser.add_argument("--history", type=int, metavar="USER_ID", help="Print a user's relationship history")
    sys.exit(asyncio.run(run(parser.parse_args())))


if __name__ == "__main__":
    main()

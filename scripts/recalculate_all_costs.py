#!/usr/bin/env python3
"""
Recalculate FIFO costs for every product with sales.

For each product: reset the fallback cost to the latest purchase price,
then replay the whole sale timeline.  Cost changes are written to the cost
audit log with reason "manual".  Each product runs in its own transaction,
so a failure on one product does not undo the others.

Usage:
    python3 scripts/recalculate_all_costs.py --database-url <url> [options]

Examples:
    # Everything
    python3 scripts/recalculate_all_costs.py --database-url postgresql://costing@localhost/costing

    # Two products, with an operator config file
    python3 scripts/recalculate_all_costs.py --sku WIDGET-1 --sku WIDGET-2 --config ops/costing.yaml
"""

from __future__ import annotations

import argparse
import sys
import uuid
from pathlib import Path

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Replay FIFO costing for all products (or selected SKUs).",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database URL (default: database.url from the active config).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Operator YAML overriding the packaged defaults.",
    )
    parser.add_argument(
        "--sku",
        action="append",
        default=None,
        help="Only recalculate this SKU (repeatable).",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    # Lazy imports so we fail fast on args first
    from costing_config import get_active_config
    from costing_kernel.db.engine import get_session, init_engine_from_url, session_scope
    from costing_kernel.exceptions import CostingError
    from costing_kernel.logging_config import LogContext, configure_logging
    from costing_services.bulk_recalculation import products_with_sales, recalculate_product
    from costing_services.engine import InventoryCostingEngine

    try:
        config = get_active_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: Failed to load config: {e}", file=sys.stderr)
        return 1

    configure_logging(level=config.logging.level)
    init_engine_from_url(
        args.database_url or config.database.url,
        echo=config.database.echo,
        pool_size=config.database.pool_size,
        max_overflow=config.database.max_overflow,
    )

    session = get_session()
    try:
        product_ids = products_with_sales(session, args.sku)
    finally:
        session.close()

    if not product_ids:
        print("No products with sales found.")
        return 0

    run_id = uuid.uuid4()
    print(f"Recalculating {len(product_ids)} product(s)... (run {run_id})")
    failures = 0
    total_changed = 0
    for product_id in product_ids:
        try:
            with LogContext.bind(correlation_id=run_id), session_scope() as session:
                engine = InventoryCostingEngine(session, config=config)
                report = recalculate_product(engine, product_id)
        except CostingError as e:
            failures += 1
            print(f"  FAILED {product_id}: [{e.code}] {e}", file=sys.stderr)
            continue

        total_changed += report.lines_changed
        print(
            f"  {report.sku}: {report.recalculation.lines_recalculated} line(s) replayed, "
            f"{report.lines_changed} changed, fallback {report.fallback_unit_cost}"
        )

    print(f"Done. {total_changed} line cost(s) changed, {failures} product(s) failed.")
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Rebuild local index entries from the ledger.

- With certificate IDs: restore each missing entry from the ledger record and the stored blob
- With --sweep: settle every unresolved orphaned upload
"""

import asyncio
import sys

from certregistry.config import get_settings
from certregistry.context import build_context, close_context
from certregistry.errors import RegistryError


async def reconcile(certificate_ids, sweep):
    context = await build_context(get_settings())
    failures = 0
    try:
        for certificate_id in certificate_ids:
            try:
                entry = await context.reconciler.rebuild_entry(certificate_id)
                print(f"{certificate_id}: indexed as {entry.normalized_id} (storage {entry.storage_id})")
            except RegistryError as e:
                failures += 1
                print(f"{certificate_id}: FAILED ({e.code}) {e}")

        if sweep:
            report = await context.reconciler.sweep_orphans()
            print(f"\nOrphans checked:   {report.checked}")
            print(f"Indexed:           {', '.join(report.indexed) or '-'}")
            print(f"Already indexed:   {', '.join(report.already_indexed) or '-'}")
            print(f"Still orphaned:    {', '.join(report.still_orphaned) or '-'}")
    finally:
        await close_context(context)
    return failures


if __name__ == '__main__':
    args = sys.argv[1:]
    sweep = "--sweep" in args
    ids = [a for a in args if a != "--sweep"]
    if not ids and not sweep:
        print("Usage: python3 reconcile_index.py [--sweep] [<certificate_id> ...]")
        sys.exit(1)

    sys.exit(1 if asyncio.run(reconcile(ids, sweep)) else 0)

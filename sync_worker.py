#!/usr/bin/env python3
"""
Dashboard Sync Worker

Each loop asks the dashboard server to run a reconciliation pass and then to
poll the courier for status changes on open consignments. Both run inside the
server so there is a single published snapshot.

Env vars:
  LOCAL_API_BASE   dashboard server API base (default: http://127.0.0.1:5000/api)
  SYNC_INTERVAL    seconds between loops (default: 60)

Run:
  python sync_worker.py [--once] [--skip-reconcile]
"""
import argparse
import logging
import time

import httpx

import dashboard_config as cfg

logger = logging.getLogger('sync_worker')


def _post(client: httpx.Client, path: str) -> dict:
    resp = client.post(f"{cfg.LOCAL_API_BASE.rstrip('/')}/{path}")
    resp.raise_for_status()
    return resp.json()


def run_once(client: httpx.Client, reconcile: bool = True) -> int:
    """One sync loop; returns how many orders changed courier status."""
    if reconcile:
        try:
            body = _post(client, 'dashboard/refresh')
            stats = body.get('stats') or {}
            logger.info("reconciled: %s orders, %s customers", stats.get('orders', 0), stats.get('customers', 0))
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("reconcile failed: %s", e)
    try:
        changed = int(_post(client, 'courier/refresh').get('changed') or 0)
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("courier refresh failed: %s", e)
        return 0
    if changed:
        logger.info("courier status changed for %d orders", changed)
    return changed


def main():
    ap = argparse.ArgumentParser(description="Dashboard sync worker")
    ap.add_argument("--once", action="store_true", help="Run a single loop and exit")
    ap.add_argument("--skip-reconcile", action="store_true", help="Only refresh courier statuses")
    ap.add_argument("--interval", type=float, default=cfg.SYNC_INTERVAL, help="Seconds between loops")
    args = ap.parse_args()

    cfg.configure_logging('sync')
    # a reconciliation pass fans out to every source, so allow it more time
    timeout = cfg.HTTP_TIMEOUT * 4
    logger.info("starting worker, interval=%ss, api=%s", args.interval, cfg.LOCAL_API_BASE)
    with httpx.Client(timeout=timeout) as client:
        try:
            while True:
                run_once(client, reconcile=not args.skip_reconcile)
                if args.once:
                    break
                time.sleep(args.interval)
        except KeyboardInterrupt:
            logger.info("exiting on Ctrl+C")


if __name__ == '__main__':
    main()

#!/usr/bin/env python3
"""
Standalone snapshot reader for the LCARS bridge.
Gathers bridge snapshots in-process, without the web server, as a debug utility.
"""
import argparse
import json
import logging
import sys
import time

import config
from cache import TTLCache
from snapshot import SnapshotAggregator

log = logging.getLogger('reader')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Print LCARS bridge snapshots.')
    parser.add_argument('--interval', type=float, default=0.0,
                        help='repeat every N seconds (default: print once)')
    parser.add_argument('--section', choices=['system', 'crew', 'gateway', 'weather', 'sessions'],
                        help='print only one section of the snapshot')
    return parser.parse_args(argv)


def render(snapshot, section=None):
    payload = snapshot[section] if section else snapshot
    return json.dumps(payload, indent=2, default=str)


def main(argv=None):
    args = parse_args(argv)
    config.configure_logging()
    aggregator = SnapshotAggregator(TTLCache())
    log.info('[READER] starting snapshot reader')
    try:
        while True:
            print(render(aggregator.gather(), args.section), flush=True)
            if args.interval <= 0:
                break
            time.sleep(args.interval)
    except KeyboardInterrupt:
        log.info('[READER] interrupted, exiting')
    except Exception as e:
        print(f'[READER] Exception: {e}', file=sys.stderr)
        raise
    finally:
        aggregator.shutdown()
        aggregator.cache.shutdown()
    return 0


if __name__ == '__main__':
    sys.exit(main())

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Command line entry point: `serve` the API or `simulate` a scripted session."""

import argparse
import asyncio
import json
import logging
import sys
from typing import Dict, List, Optional

import uvicorn
import yaml

from .api import create_app
from .config import DispatchConfig, configure_logging, load_config
from .errors import ConfigError, DispatchError
from .routing import StraightLineProvider
from .sample import sample_snapshot
from .scheduler import LogicalClock, build_scheduler

logger = logging.getLogger("DispatchCLI")


def load_scenario(filepath: Optional[str]) -> Dict:
    """Read a snapshot (JSON or YAML); the built-in Perth demo when no file is given."""
    if not filepath:
        return sample_snapshot()
    with open(filepath, 'r') as f:
        if filepath.endswith('.yaml') or filepath.endswith('.yml'):
            return yaml.safe_load(f)
        return json.load(f)


async def simulate(config: DispatchConfig, snapshot: Dict, ticks: int, step_ms: int,
                   offline: bool = False) -> List[Dict]:
    """
    Replay a snapshot on a logical clock, re-sending it every tick the way the
    map client does.

    Returns:
        The payload published on every tick
    """
    clock = LogicalClock()
    provider = StraightLineProvider(speed_kmh=config.router.speed_kmh) if offline else None
    scheduler = build_scheduler(config, provider=provider, clock=clock)

    payloads = []
    try:
        for _ in range(ticks):
            scheduler.submit_snapshot(snapshot)
            payload = await scheduler.tick()
            if payload is not None:
                payloads.append(payload)
            clock.advance(step_ms)
    finally:
        await scheduler.close()

    logger.info(f"Simulation finished: {scheduler.status()}")
    return payloads


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Emergency resource dispatch and routing')
    parser.add_argument('--config', type=str, help='Path to a JSON or YAML config file')
    parser.add_argument('--log-level', type=str, help='Override the configured log level')
    subparsers = parser.add_subparsers(dest='command', required=True)

    serve_parser = subparsers.add_parser('serve', help='Run the HTTP API')
    serve_parser.add_argument('--host', type=str, help='Host to run server on')
    serve_parser.add_argument('--port', type=int, help='Port to run server on')
    serve_parser.add_argument('--autorun', action='store_true',
                              help='Tick the scheduler in the background')

    sim_parser = subparsers.add_parser('simulate', help='Replay a scenario on a logical clock')
    sim_parser.add_argument('--scenario', type=str, help='Snapshot file (default: Perth demo)')
    sim_parser.add_argument('--ticks', type=int, default=10, help='Number of cycles to run')
    sim_parser.add_argument('--step-ms', type=int, default=3000, help='Clock step between cycles')
    sim_parser.add_argument('--offline', action='store_true',
                            help='Use straight-line routing whatever the config says')
    sim_parser.add_argument('--output', type=str, help='Write payloads to this JSON file')

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    configure_logging(args.log_level or config.log_level, config.log_file)

    if args.command == 'serve':
        if args.host:
            config.api.host = args.host
        if args.port:
            config.api.port = args.port
        if args.autorun:
            config.api.autorun = True
        app = create_app(config=config)
        uvicorn.run(app, host=config.api.host, port=config.api.port)
        return 0

    try:
        snapshot = load_scenario(args.scenario)
        payloads = asyncio.run(simulate(config, snapshot, args.ticks, args.step_ms, args.offline))
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        logger.error(f"Cannot load scenario {args.scenario}: {e}")
        return 2
    except DispatchError as e:
        logger.error(f"Simulation failed: {e}")
        return 1

    if args.output:
        with open(args.output, 'w') as f:
            json.dump(payloads, f, indent=2)
        logger.info(f"Wrote {len(payloads)} payloads to {args.output}")
    else:
        for payload in payloads:
            print(json.dumps(payload))
    return 0


if __name__ == "__main__":
    sys.exit(main())

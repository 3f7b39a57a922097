#!/usr/bin/env python3
"""
QuickPay Bill Fetcher - Main Entry Point

Usage:
    # Run API server
    python main.py server

    # Write the sample input workbook
    python main.py template --output ./

    # Process a workbook from the console (captchas are answered at the prompt)
    python main.py process consumers.xlsx --engine api --pool-size 2
"""

import sys
import base64
import asyncio
import argparse
import threading
import dataclasses
from pathlib import Path
from typing import Any, List, Optional

import yaml

from api.config import AppConfig, config as default_config
from api.logging_config import setup_logging

logger = setup_logging("bill_fetcher")


def _convert(value: Any, field_type: Any) -> Any:
    """Convert a YAML scalar or list to an AppConfig field type."""
    if isinstance(value, bool) and field_type is not bool:
        raise ValueError("unexpected boolean")
    if field_type is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return value.strip().lower() == "true"
        raise ValueError("expected true or false")
    if field_type is int:
        if isinstance(value, float) and not value.is_integer():
            raise ValueError("expected a whole number")
        return int(value)
    if field_type is float:
        return float(value)
    if field_type is str:
        if not isinstance(value, (str, int, float)):
            raise ValueError("expected a string")
        return str(value)
    if field_type == List[str]:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, list) and all(isinstance(item, str) for item in value):
            return list(value)
        raise ValueError("expected a list of strings")
    return value


def load_config(config_path: Optional[str] = None, **overrides) -> AppConfig:
    """Environment config, then YAML file values, then command-line overrides."""
    values = {}
    if config_path:
        with open(config_path) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise SystemExit(f"{config_path} must contain a mapping of configuration keys")
        values.update(loaded)
    values.update({k: v for k, v in overrides.items() if v is not None})

    fields = {f.name: f.type for f in dataclasses.fields(AppConfig)}
    unknown = sorted(set(values) - set(fields))
    if unknown:
        raise SystemExit(f"Unknown configuration keys: {', '.join(unknown)}")

    converted = {}
    for name, value in values.items():
        try:
            converted[name] = _convert(value, fields[name])
        except (TypeError, ValueError) as e:
            raise SystemExit(f"Invalid value for {name}: {value!r} ({e})") from e
    return dataclasses.replace(default_config, **converted)


def check_environment(cfg: AppConfig) -> bool:
    """Check that the configuration is usable."""
    problems = cfg.validate()
    if problems:
        print("❌ Configuration problems:")
        for problem in problems:
            print(f"  - {problem}")
        return False
    return True


def run_server(cfg: AppConfig, reload: bool = False):
    """Run the FastAPI server."""
    import uvicorn

    print(f"🚀 Starting server on {cfg.HOST}:{cfg.PORT}")
    if reload:
        # The reloader re-imports the app, so only environment config applies
        uvicorn.run("api.main:app", host=cfg.HOST, port=cfg.PORT, reload=True, log_level="info")
        return

    from api.main import app
    from api.services import build_services

    app.state.services = build_services(cfg)
    uvicorn.run(app, host=cfg.HOST, port=cfg.PORT, log_level="info")


def write_template(output_dir: str) -> Path:
    from core.spreadsheet import ExcelProcessor

    path = ExcelProcessor(output_dir).create_template()
    print(f"✅ Template written to {path}")
    return path


def save_captcha_image(image: str, directory: Path, name: str) -> Path:
    """Decode a data URI captcha into a PNG file."""
    directory.mkdir(parents=True, exist_ok=True)
    _, _, encoded = image.partition(",")
    path = directory / f"{name}.png"
    path.write_bytes(base64.b64decode(encoded))
    return path


def start_stdin_reader(loop: asyncio.AbstractEventLoop, lines: asyncio.Queue) -> threading.Thread:
    """Feed stdin lines into an asyncio queue from a daemon thread."""

    def read():
        for line in sys.stdin:
            try:
                loop.call_soon_threadsafe(lines.put_nowait, line.rstrip("\n"))
            except RuntimeError:
                # Loop closed once the batch finished
                return

    thread = threading.Thread(target=read, name="stdin-reader", daemon=True)
    thread.start()
    return thread


class ConsoleCaptchas:
    """
    Console viewer for the relay: prompt for the current captcha, route typed
    lines to it and report challenges that stop being needed.
    """

    def __init__(self, services, captcha_dir: Path):
        self.services = services
        self.captcha_dir = captcha_dir
        self.lines: asyncio.Queue = asyncio.Queue()
        self.prompted = None
        self._prompted_round = 0

    async def run(self, subscription):
        event_task = line_task = None
        try:
            while True:
                if event_task is None:
                    event_task = asyncio.ensure_future(subscription.get())
                if line_task is None:
                    line_task = asyncio.ensure_future(self.lines.get())
                done, _ = await asyncio.wait({event_task, line_task}, return_when=asyncio.FIRST_COMPLETED)

                if event_task in done:
                    event = event_task.result()
                    event_task = None
                    if event is not None:
                        self.handle_event(event)
                if line_task in done:
                    line = line_task.result()
                    line_task = None
                    self.handle_line(line)
        finally:
            for task in (event_task, line_task):
                if task is not None:
                    task.cancel()

    def handle_event(self, event):
        from monitoring.progress import EventType

        payload = event.payload
        if event.type == EventType.ITEM_FINISHED:
            progress = payload["progress"]
            print(f"  [{progress['completed']}/{progress['total']}] {payload['identifier']}: {payload['status']}")
        elif event.type == EventType.CHALLENGE_ERROR:
            print(f"  ⚠️  {payload['identifier']}: {payload['error']}")
        elif event.type == EventType.CHALLENGE_OBSOLETE:
            prompted = self.prompted
            if (prompted is not None and prompted.session_id == payload["session_id"]
                    and prompted.identifier == payload["identifier"]):
                print(f"\n  ⌛ Captcha for {payload['identifier']} is no longer needed ({payload['reason']})")
                self.prompted = None

        if event.type in (EventType.CHALLENGE_ISSUED, EventType.CHALLENGE_OBSOLETE):
            self._prompt_current()

    def handle_line(self, line: str):
        from core.errors import StaleChallenge

        challenge = self.prompted
        if challenge is None:
            print("  No captcha is waiting for an answer")
            return

        relay = self.services.relay
        pairing = (challenge.batch_id, challenge.session_id, challenge.identifier)
        try:
            if line.strip().lower() == "r":
                relay.request_reload(*pairing)
                return
            relay.submit_answer(*pairing, line)
        except StaleChallenge:
            print(f"  ⚠️  Captcha for {challenge.identifier} is no longer active")
            self.prompted = None
        except ValueError as e:
            print(f"  ⚠️  {e}")
            return
        else:
            self.prompted = None
        self._prompt_current()

    def _prompt_current(self):
        """Prompt for the relay's current captcha unless it is already on screen."""
        current = self.services.relay.queue.current()
        if current is None:
            return
        if current is self.prompted and current.rounds == self._prompted_round:
            return

        self.prompted = current
        self._prompted_round = current.rounds
        path = save_captcha_image(current.image, self.captcha_dir, f"{current.session_id}_{current.identifier}")
        print(f"Captcha for {current.identifier} ({path}) - type the text, or 'r' to reload: ",
              end="", flush=True)


async def process_workbook(path: str, cfg: AppConfig, captcha_dir: str) -> Optional[str]:
    """Run one batch in-process and return the results workbook path."""
    from api.services import build_services
    from core.errors import InvalidIdentifier

    logger.info(f"Processing {path} (engine={cfg.SESSION_ENGINE}, pool={cfg.POOL_SIZE})")
    services = build_services(cfg)
    await services.start()
    subscription = services.bus.subscribe()
    console = ConsoleCaptchas(services, Path(captcha_dir))
    start_stdin_reader(asyncio.get_running_loop(), console.lines)
    prompter = asyncio.create_task(console.run(subscription))

    try:
        try:
            raw_values = await asyncio.to_thread(services.excel.read_identifiers, path)
            batch_id = await services.dispatcher.submit(raw_values)
        except InvalidIdentifier as e:
            print(f"❌ {e}")
            return None
        batch = services.registry.get(batch_id)
        print(f"📋 Batch {batch_id}: {batch.total} consumers ({len(batch.rejected)} rejected)")
        for raw, reason in batch.rejected:
            print(f"  - skipped {raw}: {reason}")

        batch = await services.dispatcher.wait_for_batch(batch_id)
        stats = services.excel.get_statistics(batch.ordered_outcomes())
        print(f"🏁 {batch.status.value}: {stats['successful']}/{stats['total']} fetched, "
              f"total amount {stats['total_amount']:.2f}")
        if batch.error:
            print(f"❌ Export failed: {batch.error}")
            logger.error(f"Batch {batch_id} export failed: {batch.error}")
        return batch.results_path
    finally:
        prompter.cancel()
        subscription.close()
        await services.stop()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="QuickPay Bill Fetcher - concurrent MGVCL bill lookups"
    )
    parser.add_argument('--config', help='Path to YAML file with configuration overrides')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Server command
    server_parser = subparsers.add_parser('server', help='Run API server')
    server_parser.add_argument('--host', default=None, help='Host to bind to')
    server_parser.add_argument('--port', type=int, default=None, help='Port to bind to')
    server_parser.add_argument('--reload', action='store_true', help='Enable auto-reload')

    # Template command
    template_parser = subparsers.add_parser('template', help='Write the sample input workbook')
    template_parser.add_argument('--output', default='.', help='Directory to write to')

    # Process command
    process_parser = subparsers.add_parser('process', help='Process a workbook from the console')
    process_parser.add_argument('file', help='Workbook with consumer numbers in the first column')
    process_parser.add_argument('--engine', choices=['browser', 'api'], help='Session engine')
    process_parser.add_argument('--pool-size', type=int, help='Number of concurrent sessions')
    process_parser.add_argument('--results-dir', help='Where to write the results workbook')
    process_parser.add_argument('--captcha-dir', default='./captchas', help='Where to write captcha images')
    process_parser.add_argument('--show-browser', action='store_true', help='Run Chromium with a window')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    if args.command == 'template':
        write_template(args.output)
        return

    if args.command == 'server':
        cfg = load_config(args.config, HOST=args.host, PORT=args.port)
        if not check_environment(cfg):
            sys.exit(1)
        run_server(cfg, args.reload)

    elif args.command == 'process':
        cfg = load_config(
            args.config,
            SESSION_ENGINE=args.engine,
            POOL_SIZE=args.pool_size,
            RESULTS_DIR=args.results_dir,
            HEADLESS=False if args.show_browser else None,
        )
        if not check_environment(cfg):
            sys.exit(1)
        results = asyncio.run(process_workbook(args.file, cfg, args.captcha_dir))
        if results:
            print(f"✅ Results written to {results}")
        else:
            sys.exit(1)


if __name__ == "__main__":
    main()

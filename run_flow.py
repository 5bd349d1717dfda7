# run_flow.py

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from flow_errors import ConfigurationError, FlowValidationError
from flow_logging import configure_logging, get_logger
from flow_models import FlowConfig, FlowDefinition
from flow_runner import FlowOrchestrator, Metrics
from flow_validator import parse_config, parse_flow
from http_client import AiohttpClient
from runner_config import RunnerConfig, load_runner_config
from session_state import SessionState
from step_executor import StepExecutor

logger = get_logger("cli")

EXIT_SUCCESS = 0
EXIT_FLOW_FAILED = 1
EXIT_INVALID = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a flow file once against a fresh session")
    parser.add_argument("flow_file", help="Path to flow definition (JSON or YAML)")
    parser.add_argument("--env", dest="env", action="append", default=[], metavar="KEY=VALUE",
                        help="Environment variable for {{env.KEY}} references (repeatable)")
    parser.add_argument("--env-file", dest="env_file", default=None,
                        help="JSON or YAML file with a mapping of environment variables")
    parser.add_argument("--input", dest="inputs", action="append", default=[], metavar="KEY=VALUE|JSON",
                        help="Flow input as KEY=VALUE or a JSON object (repeatable)")
    parser.add_argument("--parallel", action="store_true", default=None,
                        help="Run independent steps concurrently")
    parser.add_argument("--max-concurrency", dest="max_concurrency", type=int, default=None,
                        help="Maximum steps in flight when --parallel is set (1-20)")
    parser.add_argument("--timeout-ms", dest="timeout_ms", type=int, default=None,
                        help="Overall flow deadline in milliseconds")
    parser.add_argument("--continue-on-error", dest="continue_on_error", action="store_true",
                        help="Keep scheduling steps after a network or timeout failure")
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", default=None,
                        help="Resolve every request without sending it")
    parser.add_argument("--base-url", dest="base_url", default=None,
                        help="Base URL for relative step URLs")
    parser.add_argument("--config", dest="config_file", default=None,
                        help="Runner configuration YAML file")
    parser.add_argument("--log-level", dest="log_level", default="INFO",
                        help="Logging level (DEBUG, INFO, WARNING)")
    return parser.parse_args(argv)


def load_document(path: Path) -> Any:
    """Parse a .json file as JSON and anything else as YAML."""
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        return json.loads(text)
    return YAML(typ="safe").load(text)


def parse_assignments(items: List[str], option: str) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for item in items:
        stripped = item.strip()
        if stripped.startswith("{"):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError as e:
                raise ValueError(f"{option}: invalid JSON object: {e}") from e
            if not isinstance(parsed, dict):
                raise ValueError(f"{option}: expected a JSON object")
            values.update(parsed)
            continue
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"{option}: expected KEY=VALUE, got '{item}'")
        values[key.strip()] = value
    return values


def build_flow_config(flow: FlowDefinition, args: argparse.Namespace) -> FlowConfig:
    data = (flow.config or FlowConfig()).model_dump()
    if args.parallel:
        data["parallel"] = True
    if args.max_concurrency is not None:
        data["maxConcurrency"] = args.max_concurrency
    if args.timeout_ms is not None:
        data["timeoutMs"] = args.timeout_ms
    if args.continue_on_error:
        data["stopOnError"] = False
    return parse_config(data)


async def run_flow(flow: FlowDefinition, config: FlowConfig, runner_config: RunnerConfig,
                   environment: Dict[str, Any], inputs: Dict[str, Any]):
    session = SessionState(environment=environment)
    async with AiohttpClient(runner_config.base_url, connector_limit=runner_config.connector_limit,
                             verify_ssl=runner_config.verify_ssl) as client:
        executor = StepExecutor(client, default_timeout_ms=runner_config.default_step_timeout_ms,
                                dry_run=runner_config.dry_run)
        orchestrator = FlowOrchestrator(executor, metrics=Metrics())
        try:
            return await orchestrator.run(flow, session, config, flow_inputs=inputs)
        finally:
            session.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level.upper() == "DEBUG")

    try:
        runner_config = load_runner_config(args.config_file, base_url=args.base_url, dry_run=args.dry_run,
                                           debug=True if args.log_level.upper() == "DEBUG" else None)
        environment = {}
        if args.env_file:
            loaded = load_document(Path(args.env_file)) or {}
            if not isinstance(loaded, dict):
                raise ValueError(f"--env-file must contain a mapping, got {type(loaded).__name__}")
            environment.update(loaded)
        environment.update(parse_assignments(args.env, "--env"))
        inputs = parse_assignments(args.inputs, "--input")
        flow = parse_flow(load_document(Path(args.flow_file)))
        config = build_flow_config(flow, args)
    except (FlowValidationError, ConfigurationError) as e:
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return EXIT_INVALID
    except (OSError, ValueError, YAMLError) as e:
        # pydantic's ValidationError is a ValueError
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(run_flow(flow, config, runner_config, environment, inputs))
    except (FlowValidationError, ConfigurationError) as e:
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return EXIT_INVALID
    except KeyboardInterrupt:
        print("Stopping flow run...", file=sys.stderr)
        return 130
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()

    print(result.model_dump_json(indent=2))
    return EXIT_SUCCESS if result.success else EXIT_FLOW_FAILED


if __name__ == "__main__":
    sys.exit(main())

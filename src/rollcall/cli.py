"""CLI entry point for rollcall."""

import argparse
import json
import logging
import sys
import threading

from .config import RollcallConfig, apply_env, config_to_yaml, load_config, merge_cli_args
from .heartbeat import run_heartbeat
from .registry import (
    RegistryConnectionError,
    ServiceRegistryClient,
    ValidationError,
)
from .server import serve


def _add_server_args(parser: argparse.ArgumentParser) -> None:
    """Add config flags shared by `serve` and `config`."""
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--host", type=str, help="Interface to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Plain HTTP port (default: 8001)")
    parser.add_argument(
        "--secure-port", type=int, dest="secure_port",
        help="TLS port (default: 3443)",
    )
    parser.add_argument(
        "--secure-key-path", type=str, dest="secure_key_path",
        help="Path to the TLS private key (default: server.key)",
    )
    parser.add_argument(
        "--secure-cert-path", type=str, dest="secure_cert_path",
        help="Path to the TLS certificate (default: server.pem)",
    )
    parser.add_argument(
        "--log-level", type=str, dest="log_level",
        help="Logging level (default: INFO)",
    )


def _build_config(args) -> RollcallConfig:
    """Build a RollcallConfig from a config file, the environment and CLI overrides."""
    if args.config:
        config = load_config(args.config)
    else:
        config = RollcallConfig()
    apply_env(config)
    merge_cli_args(config, args)
    return config


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def cmd_serve(args) -> None:
    """Run the registry until interrupted."""
    try:
        config = _build_config(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    _configure_logging(config.log_level)

    servers = serve(config)
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        print("Shutting down", file=sys.stderr)
    finally:
        for server in servers:
            server.shutdown()
            server.server_close()


def cmd_config(args) -> None:
    """Print the effective configuration."""
    try:
        config = _build_config(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(config_to_yaml(config), end="")


# ---------------------------------------------------------------------------
# rollcall registry subcommand
# ---------------------------------------------------------------------------

def _format_instance(instance) -> str:
    version = instance.version if instance.version is not None else "-"
    return f"{instance.id}  {instance.name}  {version}  {instance.host}:{instance.port}  heartbeat={instance.heartbeat:.1f}"


def _format_instances(instances, fmt: str) -> str:
    """Format a list of Instance objects for output."""
    if fmt == "json":
        return json.dumps([i.to_dict() for i in instances], indent=2)
    lines = [_format_instance(i) for i in instances]
    return "\n".join(lines) if lines else "(no services)"


def _client(args) -> ServiceRegistryClient:
    return ServiceRegistryClient(host=args.registry_host, port=args.registry_port)


def cmd_registry_list(args) -> None:
    print(_format_instances(_client(args).list_services(), args.format))


def cmd_registry_find(args) -> None:
    instances = _client(args).find_services(args.name, version=args.version)
    print(_format_instances(instances, args.format))


def cmd_registry_register(args) -> None:
    meta = None
    if args.meta:
        try:
            meta = json.loads(args.meta)
        except ValueError:
            print(f"Error: --meta is not valid JSON: {args.meta}", file=sys.stderr)
            sys.exit(1)
    try:
        instance = _client(args).register(args.name, args.port, host=args.host, meta=meta)
    except (ValidationError, RegistryConnectionError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    if args.format == "json":
        print(json.dumps(instance.to_dict(), indent=2))
    else:
        print(_format_instance(instance))


def cmd_registry_heartbeat(args) -> None:
    try:
        instance = _client(args).heartbeat(args.instance_id)
    except RegistryConnectionError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    if instance is None:
        print(f"Instance '{args.instance_id}' not found.", file=sys.stderr)
        sys.exit(1)
    if args.format == "json":
        print(json.dumps(instance.to_dict(), indent=2))
    else:
        print(_format_instance(instance))


def cmd_registry_deregister(args) -> None:
    try:
        ok = _client(args).deregister(args.instance_id)
    except RegistryConnectionError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    if not ok:
        print(f"Instance '{args.instance_id}' not deregistered.", file=sys.stderr)
        sys.exit(1)
    print(f"Deregistered {args.instance_id}")


def cmd_heartbeat(args) -> None:
    """Keep one instance's heartbeat fresh until interrupted."""
    _configure_logging("INFO")
    try:
        run_heartbeat(_client(args), args.instance_id, interval=args.interval)
    except KeyboardInterrupt:
        pass


def _add_registry_args(parser: argparse.ArgumentParser) -> None:
    """Add --registry-host and --registry-port to a registry sub-parser."""
    parser.add_argument(
        "--registry-host", type=str, default="localhost",
        help="Hostname of the registry server (default: localhost)",
    )
    parser.add_argument(
        "--registry-port", type=int, default=8001,
        help="Port of the registry HTTP API (default: 8001)",
    )
    parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="rollcall",
        description="rollcall: minimal microservice registry",
    )
    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the registry HTTP API")
    _add_server_args(serve_parser)
    serve_parser.set_defaults(func=cmd_serve)

    # config
    config_parser = subparsers.add_parser("config", help="Print the effective configuration")
    _add_server_args(config_parser)
    config_parser.set_defaults(func=cmd_config)

    # registry
    registry_parser = subparsers.add_parser(
        "registry", help="Query and modify a running registry",
    )
    registry_sub = registry_parser.add_subparsers(dest="registry_command")

    reg_list = registry_sub.add_parser("list", help="List all registered instances")
    _add_registry_args(reg_list)
    reg_list.set_defaults(func=cmd_registry_list)

    reg_find = registry_sub.add_parser("find", help="Find instances by service name")
    _add_registry_args(reg_find)
    reg_find.add_argument("name", type=str, help="Service name (without @version)")
    reg_find.add_argument("--version", type=str, default=None, help="Only this version")
    reg_find.set_defaults(func=cmd_registry_find)

    reg_register = registry_sub.add_parser("register", help="Register an instance")
    _add_registry_args(reg_register)
    reg_register.add_argument("name", type=str, help="Service name, optionally name@version")
    reg_register.add_argument("--port", type=int, required=True, help="Service port")
    reg_register.add_argument(
        "--host", type=str, default=None,
        help="Service host (default: the address the registry sees)",
    )
    reg_register.add_argument("--meta", type=str, default=None, help="JSON metadata")
    reg_register.set_defaults(func=cmd_registry_register)

    reg_heartbeat = registry_sub.add_parser("heartbeat", help="Send one heartbeat")
    _add_registry_args(reg_heartbeat)
    reg_heartbeat.add_argument("instance_id", type=int, help="Instance id")
    reg_heartbeat.set_defaults(func=cmd_registry_heartbeat)

    reg_deregister = registry_sub.add_parser("deregister", help="Remove an instance")
    _add_registry_args(reg_deregister)
    reg_deregister.add_argument("instance_id", type=int, help="Instance id")
    reg_deregister.set_defaults(func=cmd_registry_deregister)

    # heartbeat
    hb_parser = subparsers.add_parser("heartbeat", help="Send heartbeats periodically")
    _add_registry_args(hb_parser)
    hb_parser.add_argument("instance_id", type=int, help="Instance id")
    hb_parser.add_argument(
        "--interval", type=float, default=30,
        help="Seconds between heartbeats (default: 30)",
    )
    hb_parser.set_defaults(func=cmd_heartbeat)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "registry" and not args.registry_command:
        registry_parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()

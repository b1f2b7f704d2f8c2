"""
Fault Injector CLI
==================
Command-line entry point: start the listeners and drive the fault menu,
list the fault modes, show or initialise the configuration.
"""

from __future__ import annotations

import ssl
import time
from dataclasses import asdict
from typing import Optional

import click
from dotenv import load_dotenv
from rich.markup import escape

from faultinjector import __version__
from faultinjector.config import CONFIG_FILE, FaultInjectorConfig, load_config, save_config
from faultinjector.core.commands import ConsoleCommandSource, OperatorDesk
from faultinjector.core.faults import FAULT_MODES
from faultinjector.core.proxy import FaultProxy, build_server_ssl_context
from faultinjector.core.relay import UpstreamRelay
from faultinjector.logging_setup import setup_logging
from faultinjector.ui import (
    print_error,
    print_info,
    print_success,
    print_warning,
    show_banner,
    show_config,
    show_history,
    show_listeners,
    show_modes,
    show_stats,
)

load_dotenv()

HISTORY_LIMIT = 20


def _load_tls_context(config: FaultInjectorConfig) -> Optional[ssl.SSLContext]:
    """Build the HTTPS listener context, or None when TLS is unavailable."""
    listener = config.listener
    if not listener.tls_enabled:
        if listener.https_port:
            print_warning(
                "No certificate configured (--cert / FAULTINJECTOR_CERT_FILE); "
                "HTTPS listener disabled"
            )
        return None
    try:
        return build_server_ssl_context(listener.cert_file, listener.key_file, listener.cert_password)
    except (OSError, ssl.SSLError) as e:
        print_error(f"Cannot load certificate {listener.cert_file}: {e}")
        return None


def run_proxy(config: FaultInjectorConfig, show_header: bool = True) -> int:
    """Start the listeners and block until interrupted. Returns an exit code."""
    setup_logging(config.logging.level, config.logging.log_path)
    if show_header:
        show_banner()

    ssl_context = _load_tls_context(config)
    relay = UpstreamRelay(verify_tls=config.upstream.verify_tls, timeout=config.upstream.timeout)
    proxy = FaultProxy(relay=relay, desk=OperatorDesk(ConsoleCommandSource()))
    proxy.on_exchange(lambda record: print_info(escape(record.get_summary())))

    result = proxy.start(
        http_port=config.listener.http_port,
        https_port=config.listener.https_port if ssl_context else None,
        host=config.listener.host,
        ssl_context=ssl_context,
    )
    if not result["ok"]:
        print_error(result["error"])
        relay.close()
        return 1

    show_listeners(result["listeners"])
    print_info(f"curl example: {result['curl_example']}")
    show_modes(FAULT_MODES)
    print_info("Waiting for requests. Press Ctrl+C to stop.")

    try:
        while proxy.is_running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass

    stats = proxy.stop()
    relay.close()
    print_success(f"Proxy stopped after {stats.get('uptime_seconds', 0)}s")
    show_stats(stats)
    show_history(proxy.get_history(limit=HISTORY_LIMIT))
    return 0


# ── Main CLI ─────────────────────────────────────────────────────────────────

@click.group(invoke_without_command=True)
@click.version_option(__version__, prog_name="http-fault-injector")
@click.pass_context
def main(ctx):
    """HTTP Fault Injector: interactive fault-injection proxy"""
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config()

    if ctx.invoked_subcommand is None:
        ctx.exit(run_proxy(ctx.obj["config"]))


@main.command()
@click.option("--host", default=None, help="Interface to bind (default 0.0.0.0)")
@click.option("--http-port", type=int, default=None, help="Plain HTTP port (default 7777)")
@click.option("--https-port", type=int, default=None, help="TLS port (default 7778)")
@click.option("--cert", "cert_file", default=None, help="PEM certificate (chain) for the TLS listener")
@click.option("--key", "key_file", default=None, help="PEM private key, if not inside --cert")
@click.option("--cert-password", default=None, help="Private key password")
@click.option("--no-https", is_flag=True, help="Only start the plain HTTP listener")
@click.option("--insecure", is_flag=True, help="Skip upstream TLS certificate verification")
@click.option("--upstream-timeout", type=float, default=None, help="Upstream timeout in seconds (default: none)")
@click.option("--log-level", default=None, help="Logging level (DEBUG, INFO, WARNING)")
@click.option("--no-banner", is_flag=True, help="Skip banner display")
@click.pass_context
def run(ctx, host, http_port, https_port, cert_file, key_file, cert_password,
        no_https, insecure, upstream_timeout, log_level, no_banner):
    """Start the proxy listeners."""
    config: FaultInjectorConfig = ctx.obj["config"]

    # Apply CLI overrides
    if host:
        config.listener.host = host
    if http_port is not None:
        config.listener.http_port = http_port
    if https_port is not None:
        config.listener.https_port = https_port
    if cert_file:
        config.listener.cert_file = cert_file
    if key_file:
        config.listener.key_file = key_file
    if cert_password:
        config.listener.cert_password = cert_password
    if no_https:
        config.listener.https_port = None
    if insecure:
        config.upstream.verify_tls = False
    if upstream_timeout is not None:
        config.upstream.timeout = upstream_timeout
    if log_level:
        config.logging.level = log_level.upper()

    ctx.exit(run_proxy(config, show_header=config.ui.show_banner and not no_banner))


@main.command()
def modes():
    """List the fault modes offered for every response."""
    show_modes(FAULT_MODES)


@main.command("config")
@click.option("--init", is_flag=True, help="Write the effective configuration to the config file")
@click.pass_context
def config_cmd(ctx, init):
    """Show the effective configuration."""
    config: FaultInjectorConfig = ctx.obj["config"]
    show_config(asdict(config))
    if init:
        path = save_config(config)
        print_success(f"Configuration written to {path}")
    else:
        print_info(f"Config file: {CONFIG_FILE}")


if __name__ == "__main__":
    main()

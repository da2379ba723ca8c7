from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import paho.mqtt.client as mqtt
import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_devices, render_reading, render_stats
from cli.simulator import DeviceSimulator


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Utilities for interacting with the IoT dashboard service.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1)
    return state


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Dashboard API base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    token: Optional[str] = typer.Option(
        None,
        "--token",
        "-t",
        help="Bearer token (defaults to DASHBOARD_TOKEN env).",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(base_url=base_url, token=token)
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("login")
def login_command(
    ctx: typer.Context,
    email: str = typer.Option(..., "--email", "-e"),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True),
    admin: bool = typer.Option(False, "--admin", help="Log in against the admin accounts."),
) -> None:
    """Log in and print a bearer token for DASHBOARD_TOKEN."""
    state = _get_state(ctx)
    token = state.client.login(email, password, admin=admin)
    typer.secho("Login succeeded.", fg=typer.colors.GREEN, err=True)
    typer.echo(token)


@app.command("readings")
def readings_command(
    ctx: typer.Context,
    device_id: Optional[str] = typer.Option(None, "--device", "-d"),
    alerts_only: bool = typer.Option(False, "--alerts-only"),
    start_date: Optional[datetime] = typer.Option(None, "--since"),
    end_date: Optional[datetime] = typer.Option(None, "--until"),
    limit: int = typer.Option(50, "--limit", "-n", min=1, max=100),
    sort_by: str = typer.Option("timestamp", "--sort-by"),
    ascending: bool = typer.Option(False, "--asc", help="Oldest first."),
    fetch_all: bool = typer.Option(False, "--all", help="Follow page tokens until every reading is shown."),
) -> None:
    """List stored readings."""
    state = _get_state(ctx)
    params = {
        "deviceId": device_id,
        "alertsOnly": "true" if alerts_only else None,
        "startDate": start_date.isoformat() if start_date else None,
        "endDate": end_date.isoformat() if end_date else None,
        "limit": limit,
        "sortBy": sort_by,
        "sortOrder": "asc" if ascending else "desc",
    }
    if fetch_all:
        shown = 0
        for reading in state.client.iter_readings(params):
            render_reading(reading)
            shown += 1
        typer.echo(f"{shown} readings.")
        return

    payload = state.client.list_readings(params)
    for reading in payload.get("data") or []:
        render_reading(reading)
    metadata = payload.get("metadata") or {}
    typer.echo(f"Page {metadata.get('page')} of {metadata.get('totalPages')} ({metadata.get('total')} readings).")


@app.command("stats")
def stats_command(
    ctx: typer.Context,
    device_id: Optional[str] = typer.Option(None, "--device", "-d"),
    hours: Optional[float] = typer.Option(None, "--hours", min=0.01),
) -> None:
    """Show aggregate statistics."""
    state = _get_state(ctx)
    render_stats(state.client.get_stats(device_id=device_id, hours=hours))


@app.command("devices")
def devices_command(ctx: typer.Context) -> None:
    """List devices with reading and alert counts."""
    state = _get_state(ctx)
    render_devices(state.client.list_devices())


@app.command("generate")
def generate_command(
    ctx: typer.Context,
    count: int = typer.Argument(..., min=1, max=10000),
    prefix: Optional[str] = typer.Option(None, "--prefix"),
    location: Optional[str] = typer.Option(None, "--location"),
) -> None:
    """Generate random readings on the server (admin token required)."""
    state = _get_state(ctx)
    result = state.client.generate(count, prefix=prefix, location=location)
    typer.secho(result.get("message") or f"Generated {result.get('generated')} readings.", fg=typer.colors.GREEN)


@app.command("simulate")
def simulate_command(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, "--host", help="MQTT broker host."),
    port: Optional[int] = typer.Option(None, "--port", help="MQTT broker port."),
    interval: float = typer.Option(5.0, "--interval", min=0.1, help="Seconds between rounds."),
    rounds: int = typer.Option(0, "--rounds", min=0, help="Stop after this many rounds (0 runs until interrupted)."),
) -> None:
    """Publish simulated telemetry for five fixed devices."""
    state = _get_state(ctx)
    broker_host = host or state.config.mqtt_host
    broker_port = port or state.config.mqtt_port

    publisher = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=f"iot-simulator-{int(time.time())}")
    try:
        publisher.connect(broker_host, broker_port, keepalive=60)
    except OSError as exc:
        typer.secho(f"Could not connect to {broker_host}:{broker_port}: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    publisher.loop_start()

    simulator = DeviceSimulator(publish=lambda topic, body: publisher.publish(topic, body))
    typer.echo(f"Simulating {len(simulator.devices)} devices against {broker_host}:{broker_port}")
    completed = 0
    try:
        while not rounds or completed < rounds:
            sent = simulator.publish_round()
            completed += 1
            typer.echo(f"Round {completed}: published {sent} messages")
            if rounds and completed >= rounds:
                break
            time.sleep(interval)
    except KeyboardInterrupt:
        typer.echo("Simulation stopped.")
    finally:
        publisher.disconnect()
        publisher.loop_stop()

from __future__ import annotations

from typing import Any, Dict, Iterable

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def render_reading(reading: Dict[str, Any]) -> None:
    line = (
        f"{reading.get('timestamp')}  {reading.get('deviceId')}  "
        f"temp={reading.get('temperature')}  hum={reading.get('humidity')}  "
        f"power={reading.get('powerUsage')}"
    )
    if reading.get("isAlert"):
        typer.secho(f"{line}  ALERT: {reading.get('alertMessage')}", fg=typer.colors.RED)
    else:
        typer.echo(line)


def render_stats(stats: Dict[str, Any]) -> None:
    echo_heading("Sensor Statistics")
    echo_key_values(
        [
            ("count", stats.get("count")),
            ("total_alerts", stats.get("totalAlerts")),
            ("avg_temperature", stats.get("avgTemperature")),
            ("min_temperature", stats.get("minTemperature")),
            ("max_temperature", stats.get("maxTemperature")),
            ("avg_humidity", stats.get("avgHumidity")),
            ("min_humidity", stats.get("minHumidity")),
            ("max_humidity", stats.get("maxHumidity")),
            ("avg_power_usage", stats.get("avgPowerUsage")),
        ]
    )


def render_devices(devices: Iterable[Dict[str, Any]]) -> None:
    echo_heading("Devices")
    rows = list(devices)
    if not rows:
        typer.echo("No devices have reported yet.")
        return
    for device in rows:
        typer.echo(
            f"  - {device.get('deviceId')}: {device.get('count')} readings, "
            f"{device.get('alertCount')} alerts, last seen {device.get('lastSeen')}"
        )

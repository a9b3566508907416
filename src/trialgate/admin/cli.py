"""CLI for license server administration: devices, keys and policy."""

from __future__ import annotations

import asyncio
import dataclasses
import json
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import click

from trialgate.config import load_config
from trialgate.licensing.keys import generate_key_pair
from trialgate.server.download_keys import hash_download_key
from trialgate.server.policy import load_policy
from trialgate.storage.repositories import PolicyRecord, StoreTransaction
from trialgate.storage.sql_store import SQLLicenseStore

T = TypeVar("T")

POLICY_FIELDS = [f.name for f in dataclasses.fields(PolicyRecord)]
_INT_FIELDS = {"trial_days", "token_expiry_days"}
_NULLABLE_FIELDS = {"server_message", "force_update_below_version"}


def _fmt(ts: datetime | None) -> str:
    return ts.isoformat() if ts else "(none)"


def _run(database_url: str, fn: Callable[[StoreTransaction], Awaitable[T]]) -> T:
    """Run *fn* inside one store transaction."""

    async def _main() -> T:
        store = SQLLicenseStore()
        await store.init(database_url)
        try:
            async with store.transaction() as tx:
                return await fn(tx)
        finally:
            await store.close()

    return asyncio.run(_main())


def _parse_value(field: str, value: str) -> Any:
    """``null`` clears a field; integer fields must be whole numbers."""
    if value == "null":
        return None
    if field in _INT_FIELDS:
        if not value.isdigit():
            raise click.BadParameter(f"{field} must be a whole number", param_hint="VALUE")
        return int(value)
    return value


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to trialgate.yaml",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Trialgate license server administration."""
    ctx.ensure_object(dict)
    ctx.obj["settings"] = load_config(config_path)


def _db(ctx: click.Context) -> str:
    return ctx.obj["settings"].storage.database_url


# ---------------------------------------------------------------------------
# device
# ---------------------------------------------------------------------------


@cli.group()
def device() -> None:
    """Inspect and remove devices."""


@device.command("get")
@click.argument("device_id")
@click.pass_context
def device_get(ctx: click.Context, device_id: str) -> None:
    """Show one device record."""
    record = _run(_db(ctx), lambda tx: tx.devices.get(device_id))
    if record is None:
        click.echo(f"Device not found: {device_id}", err=True)
        raise SystemExit(1)
    click.echo(f"Device: {record.device_id}")
    click.echo(f"  registeredKey:  {record.registered_key_hash or '(none)'}")
    click.echo(f"  keyHint:        {record.key_hint or '(none)'}")
    click.echo(f"  appVersion:     {record.app_version or '(none)'}")
    click.echo(f"  trialStart:     {_fmt(record.trial_started_at)}")
    click.echo(f"  lastHeartbeat:  {_fmt(record.last_heartbeat_at)}")
    click.echo(f"  createdAt:      {_fmt(record.created_at)}")
    click.echo(
        f"  heartbeatCount: {record.heartbeat_count_today} "
        f"({record.heartbeat_date_bucket or '?'})"
    )


@device.command("list")
@click.pass_context
def device_list(ctx: click.Context) -> None:
    """List all devices."""
    records = _run(_db(ctx), lambda tx: tx.devices.list())
    if not records:
        click.echo("No devices found.")
        return
    click.echo(f"Devices ({len(records)}):")
    for r in records:
        reg = f"registered ({r.key_hint or '?'})" if r.registered_key_hash else "trial"
        click.echo(
            f"  {r.device_id}  {reg}  lastHb={_fmt(r.last_heartbeat_at)}  v={r.app_version or '?'}"
        )


@device.command("delete")
@click.argument("device_id")
@click.pass_context
def device_delete(ctx: click.Context, device_id: str) -> None:
    """Delete a device and remove it from its key's device set."""

    async def _delete(tx: StoreTransaction) -> list[str]:
        record = await tx.devices.get(device_id)
        if record is None:
            return []
        lines = []
        if record.registered_key_hash:
            removed = await tx.keys.remove_devices(record.registered_key_hash, {device_id})
            if removed:
                lines.append(f"  Removed from key {record.registered_key_hash}")
        await tx.devices.delete(device_id)
        lines.append(f"  Deleted device {device_id}")
        return lines

    lines = _run(_db(ctx), _delete)
    if not lines:
        click.echo(f"Device not found: {device_id}", err=True)
        raise SystemExit(1)
    for line in lines:
        click.echo(line)


# ---------------------------------------------------------------------------
# key
# ---------------------------------------------------------------------------


@cli.group()
def key() -> None:
    """Inspect and manage registration keys."""


def _show_key(ctx: click.Context, key_hash: str) -> None:
    record = _run(_db(ctx), lambda tx: tx.keys.get(key_hash))
    if record is None:
        click.echo(f"Key not found: {key_hash}", err=True)
        raise SystemExit(1)
    click.echo(f"Key: {record.key_hash}")
    click.echo(f"  devices:     [{', '.join(sorted(record.devices))}]")
    click.echo(f"  maxDevices:  {record.max_devices}")
    click.echo(f"  valid:       {record.valid}")
    click.echo(f"  validatedAt: {_fmt(record.validated_at)}")
    click.echo(f"  createdAt:   {_fmt(record.created_at)}")


@key.command("get")
@click.argument("download_key")
@click.pass_context
def key_get(ctx: click.Context, download_key: str) -> None:
    """Show a key by its plaintext value."""
    _show_key(ctx, hash_download_key(download_key))


@key.command("get-hash")
@click.argument("key_hash")
@click.pass_context
def key_get_hash(ctx: click.Context, key_hash: str) -> None:
    """Show a key by its SHA-256 hash."""
    _show_key(ctx, key_hash)


@key.command("list")
@click.pass_context
def key_list(ctx: click.Context) -> None:
    """List all keys."""
    records = _run(_db(ctx), lambda tx: tx.keys.list())
    if not records:
        click.echo("No keys found.")
        return
    click.echo(f"Keys ({len(records)}):")
    for r in records:
        click.echo(f"  {r.key_hash}  devices={len(r.devices)}/{r.max_devices}  valid={r.valid}")


@key.command("delete")
@click.argument("download_key")
@click.pass_context
def key_delete(ctx: click.Context, download_key: str) -> None:
    """Delete a key and clear the binding on its devices."""
    key_hash = hash_download_key(download_key)

    async def _delete(tx: StoreTransaction) -> list[str] | None:
        record = await tx.keys.get(key_hash)
        if record is None:
            return None
        lines = []
        for device_id in sorted(record.devices):
            dev = await tx.devices.get(device_id)
            if dev is not None and dev.registered_key_hash == key_hash:
                dev.registered_key_hash = None
                dev.key_hint = None
                await tx.devices.update(dev)
                lines.append(f"  Cleared registeredKey on device {device_id}")
        await tx.keys.delete(key_hash)
        lines.append(f"  Deleted key {key_hash}")
        return lines

    lines = _run(_db(ctx), _delete)
    if lines is None:
        click.echo(f"Key not found: {key_hash}", err=True)
        raise SystemExit(1)
    for line in lines:
        click.echo(line)


@key.command("remove-device")
@click.argument("download_key")
@click.argument("device_id")
@click.pass_context
def key_remove_device(ctx: click.Context, download_key: str, device_id: str) -> None:
    """Free a key slot held by DEVICE_ID."""
    key_hash = hash_download_key(download_key)

    async def _remove(tx: StoreTransaction) -> list[str] | None:
        if await tx.keys.get(key_hash) is None:
            return None
        await tx.keys.remove_devices(key_hash, {device_id})
        lines = [f"  Removed {device_id} from key {key_hash}"]
        dev = await tx.devices.get(device_id)
        if dev is not None and dev.registered_key_hash == key_hash:
            dev.registered_key_hash = None
            dev.key_hint = None
            await tx.devices.update(dev)
            lines.append(f"  Cleared registeredKey on device {device_id}")
        return lines

    lines = _run(_db(ctx), _remove)
    if lines is None:
        click.echo(f"Key not found: {key_hash}", err=True)
        raise SystemExit(1)
    for line in lines:
        click.echo(line)


@key.command("set-max")
@click.argument("download_key")
@click.argument("max_devices", type=click.IntRange(min=1))
@click.pass_context
def key_set_max(ctx: click.Context, download_key: str, max_devices: int) -> None:
    """Change how many devices a key may hold."""
    key_hash = hash_download_key(download_key)
    found = _run(_db(ctx), lambda tx: tx.keys.set_max_devices(key_hash, max_devices))
    if not found:
        click.echo(f"Key not found: {key_hash}", err=True)
        raise SystemExit(1)
    click.echo(f"  Set maxDevices={max_devices} on key {key_hash}")


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@cli.group("config")
def config_group() -> None:
    """Show and change the server policy."""


@config_group.command("get")
@click.pass_context
def config_get(ctx: click.Context) -> None:
    """Show the effective policy."""
    defaults = ctx.obj["settings"].policy
    record = _run(_db(ctx), lambda tx: load_policy(tx.policy, defaults))
    click.echo(json.dumps(dataclasses.asdict(record), indent=2))


@config_group.command("set")
@click.argument("field", type=click.Choice(POLICY_FIELDS))
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, field: str, value: str) -> None:
    """Set one policy FIELD (``null`` clears optional fields)."""
    defaults = ctx.obj["settings"].policy
    parsed = _parse_value(field, value)
    if parsed is None and field not in _NULLABLE_FIELDS:
        raise click.BadParameter(f"{field} cannot be cleared", param_hint="VALUE")

    async def _set(tx: StoreTransaction) -> None:
        record = await load_policy(tx.policy, defaults)
        await tx.policy.save(dataclasses.replace(record, **{field: parsed}))

    _run(_db(ctx), _set)
    click.echo(f"  Set policy.{field} = {json.dumps(parsed)}")


# ---------------------------------------------------------------------------
# keygen
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--out-dir", type=click.Path(file_okay=False), default=".", show_default=True)
def keygen(out_dir: str) -> None:
    """Generate an RSA key pair for signing entitlement tokens."""
    private_pem, public_pem = generate_key_pair()
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    private_file = out / "signing_key.pem"
    public_file = out / "signing_key.pub.pem"
    private_file.write_text(private_pem)
    private_file.chmod(0o600)
    public_file.write_text(public_pem)
    click.echo(f"Wrote {private_file} and {public_file}")


if __name__ == "__main__":
    cli()

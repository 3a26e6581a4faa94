import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich import print
from rich.console import Console
from rich.table import Table

from slicer_fleet.client import SlicerClient
from slicer_fleet.config import get_settings
from slicer_fleet.errors import ConfigurationError, SlicerError
from slicer_fleet.models import ErrorChunk, ExecRequest, SecretCreate, SecretPatch, VMSpec

logger = logging.getLogger(__name__)

APP_HELP = """
slicer-fleet: manage VMs on a Slicer fleet manager.

Connection settings come from --endpoint/--token or the SLICER_ENDPOINT and
SLICER_TOKEN environment variables (a .env file in the working directory is
read too).

EXAMPLES:
  slicer-fleet vm create w1-medium --cpus 2 --ram-gb 8 --tag env=dev
  slicer-fleet exec HOSTNAME -- uname -a
  slicer-fleet cp ./app.conf HOSTNAME /etc/app.conf --permissions 0640
"""

app = typer.Typer(name="slicer-fleet", help=APP_HELP, no_args_is_help=True)
vm_app = typer.Typer(name="vm", help="Create, list and delete VMs.")
secret_app = typer.Typer(name="secret", help="Manage secrets injected into VMs.")
app.add_typer(vm_app, name="vm")
app.add_typer(secret_app, name="secret")

err_console = Console(stderr=True)


@app.callback()
def main(
    ctx: typer.Context,
    endpoint: Optional[str] = typer.Option(None, "--endpoint", "-e", help="Fleet manager API URL"),
    token: Optional[str] = typer.Option(None, "--token", help="Bearer token for the API"),
    insecure: bool = typer.Option(False, "--insecure", help="Skip TLS certificate verification"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log requests to stderr"),
):
    """Global connection options."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
    ctx.obj = {
        "endpoint": endpoint,
        "token": token,
        "insecure": True if insecure else None,
    }


def _make_client(options: Dict[str, Any]) -> SlicerClient:
    settings = get_settings(**options)
    if not settings.is_configured:
        raise ConfigurationError("Set SLICER_ENDPOINT and SLICER_TOKEN (or pass --endpoint and --token)")
    return SlicerClient.from_settings(settings)


def _run(ctx: typer.Context, operation):
    """Run ``operation(client)`` to completion and report fleet errors."""

    async def runner():
        async with _make_client(ctx.obj or {}) as client:
            return await operation(client)

    try:
        return asyncio.run(runner())
    except SlicerError as e:
        err_console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(code=1)


# ============================================================================
# VM Commands
# ============================================================================


@vm_app.command("list")
def vm_list(
    ctx: typer.Context,
    tag: Optional[str] = typer.Option(None, "--tag", "-t", help="Only VMs with this tag (key=value)"),
):
    """List VMs."""
    vms = _run(ctx, lambda client: client.inventory.find_vms(tag=tag))

    if not vms:
        print("[yellow]No VMs found[/yellow]")
        return

    table = Table(title="VMs")
    table.add_column("Hostname", style="cyan")
    table.add_column("Host group")
    table.add_column("IP")
    table.add_column("CPUs", justify="right")
    table.add_column("RAM (GB)", justify="right")
    table.add_column("Arch")
    table.add_column("Tags")
    table.add_column("Created")
    for vm in vms:
        table.add_row(
            vm.hostname,
            vm.host_group,
            vm.bare_ip,
            str(vm.cpus or "-"),
            str(vm.ram_gb or "-"),
            vm.arch,
            ", ".join(vm.tags),
            vm.created_at.isoformat() if vm.created_at else "",
        )
    Console().print(table)


@vm_app.command("show")
def vm_show(ctx: typer.Context, hostname: str = typer.Argument(..., help="VM hostname")):
    """Show one VM."""
    vm = _run(ctx, lambda client: client.inventory.get_vm(hostname))
    print(f"[bold cyan]{vm.hostname}[/bold cyan]")
    print(f"  host group: {vm.host_group}")
    print(f"  ip:         {vm.bare_ip}")
    print(f"  cpus:       {vm.cpus}")
    print(f"  ram:        {vm.ram_gb} GB")
    print(f"  arch:       {vm.arch}")
    print(f"  persistent: {vm.persistent}")
    if vm.tags:
        print(f"  tags:       {', '.join(vm.tags)}")


@vm_app.command("create")
def vm_create(
    ctx: typer.Context,
    host_group: str = typer.Argument(..., help="Host group to create the VM in (e.g. 'w1-medium')"),
    cpus: int = typer.Option(0, "--cpus", help="CPU count (0 = host group default)"),
    ram_gb: int = typer.Option(0, "--ram-gb", help="RAM in GB (0 = host group default)"),
    persistent: bool = typer.Option(False, "--persistent", help="Keep the disk across restarts"),
    disk_image: Optional[str] = typer.Option(None, "--disk-image", help="Custom disk image"),
    import_user: Optional[str] = typer.Option(None, "--import-user", help="Import SSH keys of this GitHub user"),
    ssh_key: Optional[List[str]] = typer.Option(None, "--ssh-key", help="SSH public key (repeatable)"),
    userdata_file: Optional[Path] = typer.Option(None, "--userdata-file", help="Cloud-init userdata script"),
    tag: Optional[List[str]] = typer.Option(None, "--tag", "-t", help="Tag in key=value form (repeatable)"),
    secret: Optional[List[str]] = typer.Option(None, "--secret", help="Secret name to inject (repeatable)"),
):
    """Create a VM; prints its hostname and IP."""
    userdata = userdata_file.read_text() if userdata_file else None

    def create(client: SlicerClient):
        spec = VMSpec(
            cpus=cpus,
            ram_gb=ram_gb,
            persistent=persistent,
            disk_image=disk_image,
            import_user=import_user,
            ssh_keys=ssh_key or (),
            userdata=userdata,
            tags=tag or (),
            secrets=secret or (),
        )
        return client.inventory.create_vm(host_group, spec)

    vm = _run(ctx, create)
    print(f"[green]Created {vm.hostname}[/green] ip={vm.bare_ip} arch={vm.arch}")


@vm_app.command("delete")
def vm_delete(
    ctx: typer.Context,
    host_group: str = typer.Argument(..., help="Host group of the VM"),
    hostname: str = typer.Argument(..., help="VM hostname"),
):
    """Delete a VM."""
    _run(ctx, lambda client: client.inventory.delete_vm(host_group, hostname))
    print(f"[green]Deleted {hostname}[/green]")


@app.command("hostgroups")
def hostgroups(ctx: typer.Context):
    """List host groups and their default sizing."""
    groups = _run(ctx, lambda client: client.inventory.get_host_groups())

    table = Table(title="Host groups")
    table.add_column("Name", style="cyan")
    table.add_column("VMs", justify="right")
    table.add_column("CPUs", justify="right")
    table.add_column("RAM (GB)", justify="right")
    table.add_column("Arch")
    table.add_column("GPUs", justify="right")
    for group in groups:
        table.add_row(
            group.name,
            str(group.count),
            str(group.cpus),
            str(group.ram_gb),
            group.arch,
            str(group.gpu_count),
        )
    Console().print(table)


# ============================================================================
# Exec / Copy
# ============================================================================


@app.command("exec")
def exec_command(
    ctx: typer.Context,
    hostname: str = typer.Argument(..., help="VM hostname"),
    command: str = typer.Argument(..., help="Command to run"),
    args: Optional[List[str]] = typer.Argument(None, help="Command arguments (put them after --)"),
    uid: int = typer.Option(0, "--uid", help="User ID to run as"),
    gid: int = typer.Option(0, "--gid", help="Group ID to run as"),
    cwd: Optional[str] = typer.Option(None, "--cwd", help="Working directory"),
    shell: Optional[str] = typer.Option(None, "--shell", help="Shell to run the command with"),
):
    """
    Run a command on a VM and stream its output.

    Exits with the remote exit code, or 1 if the command could not run.
    """

    async def stream(client: SlicerClient):
        request = ExecRequest(
            command=command,
            args=args or (),
            uid=uid,
            gid=gid,
            cwd=cwd,
            shell=shell,
        )
        async with client.exec.session(hostname, request) as session:
            async for chunk in session:
                if chunk.stdout:
                    sys.stdout.write(chunk.stdout)
                    sys.stdout.flush()
                if chunk.stderr:
                    sys.stderr.write(chunk.stderr)
                    sys.stderr.flush()
                if isinstance(chunk, ErrorChunk):
                    logger.debug(f"Error chunk ({chunk.source}): {chunk.error}")
        session.raise_for_status()
        return session.result()

    result = _run(ctx, stream)
    raise typer.Exit(code=result.exit_code or 0)


@app.command("cp")
def copy_file(
    ctx: typer.Context,
    source: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Local file"),
    hostname: str = typer.Argument(..., help="VM hostname"),
    destination: str = typer.Argument(..., help="Absolute destination path on the VM"),
    uid: int = typer.Option(0, "--uid", help="Owner UID"),
    gid: int = typer.Option(0, "--gid", help="Owner GID"),
    permissions: str = typer.Option("0644", "--permissions", "-m", help="File mode, e.g. 0644"),
    mode: str = typer.Option("binary", "--mode", help="Transfer mode: binary or tar"),
):
    """Copy a local file to a VM; prints the SHA-256 of the content."""
    content = source.read_bytes()
    result = _run(
        ctx,
        lambda client: client.files.transfer(
            hostname,
            content,
            destination,
            uid=uid,
            gid=gid,
            permissions=permissions,
            mode=mode,
        ),
    )
    print(f"[green]Copied {result.size} bytes to {hostname}:{destination}[/green]")
    print(result.digest)


# ============================================================================
# Secret Commands
# ============================================================================


@secret_app.command("list")
def secret_list(ctx: typer.Context):
    """List secrets (metadata only)."""
    secrets = _run(ctx, lambda client: client.secrets.list_secrets())

    if not secrets:
        print("[yellow]No secrets found[/yellow]")
        return

    table = Table(title="Secrets")
    table.add_column("Name", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Permissions")
    table.add_column("UID", justify="right")
    table.add_column("GID", justify="right")
    for secret in secrets:
        table.add_row(secret.name, str(secret.size), secret.permissions, str(secret.uid), str(secret.gid))
    Console().print(table)


def _secret_value(value: Optional[str], from_file: Optional[Path]) -> Optional[str]:
    if value is not None and from_file is not None:
        print("[red]Use only one of --value or --from-file[/red]")
        raise typer.Exit(code=2)
    if from_file is not None:
        return from_file.read_text()
    return value


@secret_app.command("create")
def secret_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Secret name"),
    value: Optional[str] = typer.Option(None, "--value", help="Secret value"),
    from_file: Optional[Path] = typer.Option(None, "--from-file", exists=True, dir_okay=False, help="Read the value from a file"),
    permissions: str = typer.Option("0600", "--permissions", "-m", help="File mode inside the VM"),
    uid: int = typer.Option(0, "--uid", help="Owner UID inside the VM"),
    gid: int = typer.Option(0, "--gid", help="Owner GID inside the VM"),
):
    """Create a secret."""
    data = _secret_value(value, from_file)
    if data is None:
        print("[red]A value is required (--value or --from-file)[/red]")
        raise typer.Exit(code=2)

    def create(client: SlicerClient):
        secret = SecretCreate(name=name, data=data, permissions=permissions, uid=uid, gid=gid)
        return client.secrets.create_secret(secret)

    _run(ctx, create)
    print(f"[green]Created secret {name}[/green]")


@secret_app.command("patch")
def secret_patch(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Secret name"),
    value: Optional[str] = typer.Option(None, "--value", help="New value"),
    from_file: Optional[Path] = typer.Option(None, "--from-file", exists=True, dir_okay=False, help="Read the new value from a file"),
    permissions: Optional[str] = typer.Option(None, "--permissions", "-m", help="New file mode"),
    uid: Optional[int] = typer.Option(None, "--uid", help="New owner UID"),
    gid: Optional[int] = typer.Option(None, "--gid", help="New owner GID"),
):
    """Update a secret's value, ownership or permissions."""
    data = _secret_value(value, from_file)

    def patch(client: SlicerClient):
        update = SecretPatch(data=data, permissions=permissions, uid=uid, gid=gid)
        return client.secrets.patch_secret(name, update)

    _run(ctx, patch)
    print(f"[green]Updated secret {name}[/green]")


@secret_app.command("delete")
def secret_delete(ctx: typer.Context, name: str = typer.Argument(..., help="Secret name")):
    """Delete a secret."""
    _run(ctx, lambda client: client.secrets.delete_secret(name))
    print(f"[green]Deleted secret {name}[/green]")


if __name__ == "__main__":
    app()

#!/usr/bin/env python3
"""
Recycle one IIS application pool on every server listed in HostFile.txt and
record the worker process working set before and after each recycle.

Servers are EC2 instances, given either by instance ID or by Name tag.
Remote work runs as PowerShell through SSM (AWS-RunPowerShellScript).
"""
import argparse
import getpass
import logging
import os
import re
import sys
import traceback
from dataclasses import dataclass
from datetime import datetime

import boto3
from botocore.exceptions import WaiterError

region = os.getenv("AWS_REGION", "us-east-1")

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
HOSTS_FILE = os.path.join(SCRIPT_DIR, "HostFile.txt")
RESULTS_FILE = os.path.join(SCRIPT_DIR, "AppPoolResetResults.txt")

WORKER_PROCESS = "w3wp.exe"
FAILURE_MARKER = "AppPool reset FAILED"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
SETTLE_SECONDS = 5

COMMAND_TIMEOUT = 600
EXECUTION_TIMEOUT = 3600
POLL_DELAY = 5

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1
_INT_RE = re.compile(r"[+-]?[0-9]+")

logger = logging.getLogger("apppool-reset")

LIST_POOLS_SCRIPT = r'''
$ErrorActionPreference = "Stop"
Get-CimInstance Win32_Process |
    Where-Object { $_.CommandLine -like "*%(worker)s*" } |
    ForEach-Object { Write-Output $_.CommandLine }
'''

RESET_SCRIPT = r'''
$ErrorActionPreference = "Stop"
Import-Module WebAdministration | Out-Null
$pool = '%(pool)s'

function Get-PoolWorkingSet {
    $worker = Get-CimInstance Win32_Process -Filter "Name = '%(worker)s'" |
        Where-Object { $_.CommandLine -and $_.CommandLine.Contains("`"$pool`"") } |
        Select-Object -First 1
    if ($worker) { Write-Output $worker.WorkingSetSize } else { Write-Output "" }
}

Get-PoolWorkingSet
Restart-WebAppPool -Name $pool
Start-Sleep -Seconds %(settle)d
Get-PoolWorkingSet
'''


class NoServersFoundError(Exception):
    pass


class AppPoolNotFoundError(Exception):
    pass


class RemoteCommandError(Exception):
    pass


class SampleParseError(ValueError):
    pass


@dataclass
class ResetResult:
    server: str
    pool: str
    before_mb: int
    after_mb: int
    timestamp: str
    user: str

    def format(self) -> str:
        return (
            f"Server: {self.server} AppPool: {self.pool} "
            f"WorkingSet BEFORE Recycle: {self.before_mb} MB "
            f"WorkingSet AFTER recycle: {self.after_mb} MB "
            f"at {self.timestamp} by {self.user}"
        )


class RemoteShell:
    """
    Run PowerShell scripts on EC2 instances through SSM.
    Every call blocks until the remote invocation has finished.
    """

    def __init__(self, ssm=None, ec2=None, poll_delay=POLL_DELAY,
                 timeout=COMMAND_TIMEOUT, region_name=None):
        region_name = region_name or region
        self.ssm = ssm or boto3.client("ssm", region_name=region_name)
        self.ec2 = ec2 or boto3.client("ec2", region_name=region_name)
        self.poll_delay = poll_delay
        self.timeout = timeout

    def get_instance_id(self, server: str) -> str:
        """
        Convert a server name (tag:Name) into an EC2 instance ID.
        If an instance ID is already provided, just return it.
        """
        if server.startswith("i-"):
            return server
        response = self.ec2.describe_instances(
            Filters=[
                {"Name": "tag:Name", "Values": [server]},
                {"Name": "instance-state-name", "Values": ["running"]},
            ]
        )
        instances = [
            i["InstanceId"]
            for r in response["Reservations"]
            for i in r["Instances"]
        ]
        if not instances:
            raise ValueError(f"No running EC2 instance found with Name tag '{server}'")
        if len(instances) > 1:
            raise ValueError(
                f"Name tag '{server}' matches several instances: {', '.join(instances)}"
            )
        logger.debug("Resolved %s to %s", server, instances[0])
        return instances[0]

    def run(self, server: str, script: str) -> str:
        """Run script on server and return its standard output."""
        instance_id = self.get_instance_id(server)
        response = self.ssm.send_command(
            DocumentName="AWS-RunPowerShellScript",
            InstanceIds=[instance_id],
            Parameters={
                "workingDirectory": [""],
                "executionTimeout": [str(EXECUTION_TIMEOUT)],
                "commands": [script],
            },
            TimeoutSeconds=self.timeout,
        )
        command_id = response["Command"]["CommandId"]
        logger.debug("Sent command %s to %s (%s)", command_id, server, instance_id)

        waiter = self.ssm.get_waiter("command_executed")
        try:
            waiter.wait(
                CommandId=command_id,
                InstanceId=instance_id,
                WaiterConfig={
                    "Delay": self.poll_delay,
                    "MaxAttempts": max(1, self.timeout // max(1, self.poll_delay)),
                },
            )
        except WaiterError as e:
            last = e.last_response or {}
            status = last.get("Status", "Unknown")
            stderr = (last.get("StandardErrorContent") or "").strip()
            raise RemoteCommandError(
                f"Command {command_id} on {server} ({instance_id}) ended with status "
                f"{status}: {stderr or e}"
            ) from e

        invocation = self.ssm.get_command_invocation(
            CommandId=command_id, InstanceId=instance_id
        )
        return invocation.get("StandardOutputContent", "")


def ps_quote(value: str) -> str:
    # single-quoted PowerShell literal
    return value.replace("'", "''")


def to_int64(value, best_effort=True) -> int:
    """
    Parse a decimal string as a signed 64-bit integer.

    With best_effort, empty, malformed or out-of-range input gives 0 instead
    of raising SampleParseError.
    """
    text = "" if value is None else str(value).strip()
    if _INT_RE.fullmatch(text):
        number = int(text)
        if INT64_MIN <= number <= INT64_MAX:
            return number
    if best_effort:
        return 0
    raise SampleParseError(f"Not a 64-bit integer: {value!r}")


def bytes_to_mb(num_bytes: int) -> int:
    return round(num_bytes / 2 ** 20)


def read_hosts(path: str) -> list:
    """Return the servers in a host file, in file order. Comments and blank lines are skipped."""
    if not os.path.exists(path):
        raise FileNotFoundError(f"Hosts file not found: {path}")
    servers = []
    # utf-8-sig drops the BOM Notepad and PowerShell put in front of the first line
    with open(path, encoding="utf-8-sig") as f:
        for line in f:
            server = line.strip()
            if not server or server.startswith("#"):
                continue
            servers.append(server)
    return servers


def load_servers(path: str) -> list:
    servers = read_hosts(path)
    if not servers:
        raise NoServersFoundError(f"No servers found in {path}")
    return servers


def get_first_server(path: str) -> str:
    return load_servers(path)[0]


def extract_pool_name(command_line: str):
    """Pool name between the first two double quotes, e.g. w3wp.exe -ap "Pool" -v ..."""
    parts = command_line.split('"')
    if len(parts) < 3:
        return None
    return parts[1]


def get_remote_app_pools(shell, server: str) -> list:
    output = shell.run(server, LIST_POOLS_SCRIPT % {"worker": WORKER_PROCESS})
    pools = []
    for line in output.splitlines():
        name = extract_pool_name(line)
        if name:
            pools.append(name)
    logger.info("Found %d worker process(es) on %s", len(pools), server)
    return pools


def prompt_for_pool(pools, input_func=input) -> str:
    """Show a numbered menu of pools and block until one is chosen."""
    print("Select the AppPool to recycle:")
    for n, name in enumerate(pools, 1):
        print(f"  {n}) {name}")
    while True:
        choice = input_func(f"AppPool [1-{len(pools)}]: ").strip()
        if choice in pools:
            return choice
        if choice.isdigit() and 1 <= int(choice) <= len(pools):
            return pools[int(choice) - 1]
        print(f"Invalid selection: {choice!r}")


def validate_app_pool(shell, pool, reference_server, stop_on_error, choose=prompt_for_pool) -> str:
    """
    Make sure pool runs on the reference server.
    An unknown (or empty) name either aborts or is replaced by the operator's choice.
    """
    pools = get_remote_app_pools(shell, reference_server)
    name = (pool or "").strip()
    if name and name in pools:
        return name
    if not pools:
        raise AppPoolNotFoundError(f"No AppPools are running on {reference_server}")
    if stop_on_error:
        raise AppPoolNotFoundError(f"AppPool '{name}' not found on {reference_server}")
    return choose(sorted(set(pools)))


def reset_remote_app_pool(shell, server, pool, best_effort=True,
                          settle=SETTLE_SECONDS, clock=datetime.now):
    """
    Recycle pool on server and sample its worker's working set around the recycle.
    Returns (before_mb, after_mb, timestamp).
    """
    script = RESET_SCRIPT % {"pool": ps_quote(pool), "worker": WORKER_PROCESS, "settle": settle}
    lines = shell.run(server, script).splitlines()
    before = lines[0] if lines else ""
    after = lines[1] if len(lines) > 1 else ""
    before_mb = bytes_to_mb(to_int64(before, best_effort))
    after_mb = bytes_to_mb(to_int64(after, best_effort))
    return before_mb, after_mb, clock().strftime(TIMESTAMP_FORMAT)


def get_invoking_user() -> str:
    user = getpass.getuser()
    domain = os.getenv("USERDOMAIN")
    return f"{domain}\\{user}" if domain else user


def clear_screen():
    if sys.stdout.isatty():
        print("\033[2J\033[H", end="", flush=True)


def write_results(path, lines):
    with open(path, "w") as f:
        f.write("\n".join(lines) + "\n")


def write_failure(path, detail):
    with open(path, "a") as f:
        f.write(detail.rstrip("\n") + "\n")
        f.write(FAILURE_MARKER + "\n")


def run(app_pool=None, stop_on_error=False, hosts_file=HOSTS_FILE, results_file=RESULTS_FILE,
        shell=None, best_effort=True, settle=SETTLE_SECONDS, choose=prompt_for_pool) -> int:
    """
    Entry point for both imported and direct usage.
    app_pool falls back to the AppPool_name env var (Jenkins); when neither
    is set the operator is asked to pick one.
    """
    if not app_pool:
        app_pool = os.getenv("AppPool_name", "")
    try:
        servers = load_servers(hosts_file)
        shell = shell or RemoteShell()
        app_pool = validate_app_pool(shell, app_pool, servers[0], stop_on_error, choose)

        clear_screen()
        user = get_invoking_user()
        results = []
        for server in servers:
            logger.info("Recycling %s on %s", app_pool, server)
            before_mb, after_mb, timestamp = reset_remote_app_pool(
                shell, server, app_pool, best_effort=best_effort, settle=settle
            )
            line = ResetResult(server, app_pool, before_mb, after_mb, timestamp, user).format()
            print(line, flush=True)
            results.append(line)
        write_results(results_file, results)
        logger.info("Wrote %d result(s) to %s", len(results), results_file)
        return 0
    except AppPoolNotFoundError as e:
        logger.error("%s", e)
        return 1
    except Exception:
        write_failure(results_file, traceback.format_exc())
        logger.exception("AppPool reset failed, details in %s", results_file)
        return 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Recycle an IIS AppPool on every server in the hosts file."
    )
    parser.add_argument("--app-pool", default=None, help="AppPool to recycle (prompted when missing)")
    parser.add_argument("--stop-on-error", action="store_true",
                        help="exit instead of prompting when the AppPool is not found")
    parser.add_argument("--hosts-file", default=HOSTS_FILE)
    parser.add_argument("--results-file", default=RESULTS_FILE)
    parser.add_argument("--region", default=region)
    parser.add_argument("--settle-seconds", type=int, default=SETTLE_SECONDS,
                        help="wait after the recycle before sampling again")
    parser.add_argument("--strict-samples", action="store_true",
                        help="fail on unparsable memory samples instead of recording 0")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    return run(
        app_pool=args.app_pool,
        stop_on_error=args.stop_on_error,
        hosts_file=args.hosts_file,
        results_file=args.results_file,
        shell=RemoteShell(region_name=args.region),
        best_effort=not args.strict_samples,
        settle=args.settle_seconds,
    )


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
# timesync.py - HOLFY27 VM Time Sync Disable Tool
# Version 1.0 - October 2026
# Author - HOL Core Team
# Disables VMware Tools / host time synchronization on a single VM

"""
VM Time Sync Disable Tool

Sets the eight advanced settings that stop a VM from taking its time from the
ESXi host (tools.syncTime and the time.synchronize.* family) to FALSE.
vSphere only accepts these changes while the VM is powered off, so the run is:

1. Connect to the vCenter/ESXi endpoint
2. Locate the VM by name
3. Inspect power state and VMware Tools status
4. If powered on with Tools running, shut the guest down and wait for power off
   (powered on without Tools: stop, the VM must be shut down by hand)
5. Write the eight settings
6. Power the VM back on
7. Read the settings back and report before/after values

Usage:
    python3 timesync.py TestVM --vcenter vcsa-01a.site-a.vcf.lab
    python3 timesync.py TestVM --check        # Report current settings only
    python3 timesync.py TestVM --dry-run      # Show what would be done
    python3 timesync.py TestVM --json         # Also print the result as JSON

Configuration:
    Defaults are read from the [TIMESYNC] section of /tmp/config.ini.
"""

import sys
import json
import argparse
import logging
from enum import Enum
from typing import Dict, List, Optional
from dataclasses import dataclass, field, asdict

from pyVmomi import vim

import tsfunctions as tsf

logger = logging.getLogger(__name__)

#==============================================================================
# SCRIPT CONFIGURATION
#==============================================================================

SCRIPT_NAME = 'timesync'
SCRIPT_VERSION = '1.0'
SCRIPT_DESCRIPTION = 'HOLFY27 VM Time Sync Disable Tool'

EXIT_OK = 0
EXIT_ERROR = 1

#==============================================================================
# RESULT TYPES
#==============================================================================

class RunState(Enum):
    CONNECTING = 'connecting'
    LOCATING = 'locating'
    INSPECTING = 'inspecting'
    SHUTTING_DOWN = 'shutting_down'
    CONFIGURING = 'configuring'
    POWERING_ON = 'powering_on'
    DONE = 'done'
    CONNECT_FAILED = 'connect_failed'
    NOT_FOUND = 'not_found'
    INSPECT_FAILED = 'inspect_failed'
    TOOLS_NOT_RUNNING = 'tools_not_running'
    SHUTDOWN_TIMEOUT = 'shutdown_timeout'
    SHUTDOWN_FAILED = 'shutdown_failed'
    CONFIG_WRITE_FAILED = 'config_write_failed'
    POWER_ON_FAILED = 'power_on_failed'
    CANCELLED = 'cancelled'
    FAILED = 'failed'


class WriteStatus(Enum):
    WRITTEN = 'written'
    FAILED = 'failed'
    SKIPPED = 'skipped'


@dataclass
class WriteOutcome:
    """Result of writing one advanced setting"""
    key: str
    outcome: WriteStatus
    message: str = ''


@dataclass
class RunResult:
    """Everything a run observed and changed"""
    vm_name: str
    state: RunState = RunState.CONNECTING
    power_state: str = ''
    tools_status: str = ''
    shutdown_requested: bool = False
    forced_poweroff: bool = False
    powered_on: bool = False
    before: Dict[str, Optional[str]] = field(default_factory=dict)
    after: Dict[str, Optional[str]] = field(default_factory=dict)
    writes: List[WriteOutcome] = field(default_factory=list)
    error: str = ''

    @property
    def written_keys(self) -> List[str]:
        return [w.key for w in self.writes if w.outcome == WriteStatus.WRITTEN]

    def to_dict(self) -> dict:
        data = asdict(self)
        data['state'] = self.state.value
        data['writes'] = [
            {'key': w.key, 'outcome': w.outcome.value, 'message': w.message}
            for w in self.writes
        ]
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)


@dataclass
class Options:
    """Tunables for a run, loaded from [TIMESYNC] and overridden on the command line"""
    shutdown_timeout: int = tsf.VM_SHUTDOWN_TIMEOUT
    poll_interval: float = tsf.VM_SHUTDOWN_POLL_INTERVAL
    max_poll_interval: float = tsf.VM_SHUTDOWN_MAX_POLL_INTERVAL
    force_poweroff: bool = False
    wait_for_poweron: bool = False
    poweron_timeout: int = tsf.VM_POWERON_TIMEOUT
    skip_if_compliant: bool = False
    dry_run: bool = False

    @classmethod
    def from_config(cls, section=tsf.config_section):
        return cls(
            shutdown_timeout=tsf.get_config_int(section, 'shutdown_timeout', tsf.VM_SHUTDOWN_TIMEOUT),
            poll_interval=tsf.get_config_int(section, 'poll_interval', tsf.VM_SHUTDOWN_POLL_INTERVAL),
            max_poll_interval=tsf.get_config_int(section, 'max_poll_interval', tsf.VM_SHUTDOWN_MAX_POLL_INTERVAL),
            force_poweroff=tsf.get_config_bool(section, 'force_poweroff', False),
            wait_for_poweron=tsf.get_config_bool(section, 'wait_for_poweron', False),
            poweron_timeout=tsf.get_config_int(section, 'poweron_timeout', tsf.VM_POWERON_TIMEOUT),
            skip_if_compliant=tsf.get_config_bool(section, 'skip_if_compliant', False),
        )

#==============================================================================
# VM LOOKUP
#==============================================================================

def find_vm(si, vm_name):
    """
    Look a VM up by name

    :raises NotFound: no VM has that name, or the inventory could not be searched
    """
    try:
        vm = tsf.get_vm(si, vm_name)
    except Exception as e:
        raise tsf.NotFound(f'Unable to search inventory for {vm_name}: {tsf.fault_message(e)}') from e
    if vm is None:
        raise tsf.NotFound(f'VM {vm_name} not found')
    return vm

#==============================================================================
# TIME SYNC DISABLER
#==============================================================================

class TimeSyncDisabler:
    """
    Power-state aware update of the time sync settings on one VM

    :param si: connected ServiceInstance (the caller owns the session)
    :param vm_name: VM to update
    :param options: Options for timeouts and optional behaviour
    :param guard: CancelGuard checked between steps (optional)
    """

    def __init__(self, si, vm_name, options=None, guard=None):
        self.si = si
        self.vm_name = vm_name
        self.options = options if options is not None else Options()
        self.guard = guard if guard is not None else tsf.CancelGuard(signals=())
        self.result = RunResult(vm_name=vm_name)
        self.vm = None

    def run(self) -> RunResult:
        """
        Run every step. Raises a TimeSyncError subclass on failure with
        self.result holding what was done up to that point.
        """
        try:
            self.locate()
            self.inspect()
            self.guard.check()

            if self.options.skip_if_compliant and tsf.is_compliant(self.result.before):
                tsf.write_output(f'{self.vm_name}: Time sync already disabled - skipping settings update')
            else:
                self.ensure_powered_off()
                self.guard.check()
                self.configure()

            self.power_on()
            self.guard.check()
            self.report()
        except tsf.TimeSyncError as e:
            self.result.state = RunState(e.state)
            self.result.error = str(e)
            raise
        return self.result

    #--------------------------------------------------------------------------

    def locate(self):
        self.result.state = RunState.LOCATING
        self.vm = find_vm(self.si, self.vm_name)
        tsf.write_output(f'{self.vm_name}: Found VM')

    def inspect(self):
        self.result.state = RunState.INSPECTING
        try:
            self.result.power_state = tsf.get_power_state(self.vm)
            self.result.tools_status = tsf.get_tools_status(self.vm)
            self.result.before = tsf.get_extra_config(self.vm)
        except Exception as e:
            raise tsf.InspectFailed(f'{self.vm_name}: Unable to read VM state: {tsf.fault_message(e)}') from e

        tsf.write_output(f'{self.vm_name}: power={self.result.power_state}, tools={self.result.tools_status}')

        if self.result.power_state == vim.VirtualMachinePowerState.suspended:
            raise tsf.InspectFailed(f'{self.vm_name}: VM is suspended - resume or power it off and re-run')

    def ensure_powered_off(self):
        """Shut the guest down if needed so the settings can be written"""
        if self.result.power_state == vim.VirtualMachinePowerState.poweredOff:
            tsf.write_output(f'{self.vm_name}: Already powered off')
            return

        if self.result.tools_status not in tsf.TOOLS_RUNNING:
            raise tsf.ToolsNotRunning(
                f'{self.vm_name}: VMware Tools not running ({self.result.tools_status}) - '
                'shut the VM down manually and re-run'
            )

        if self.options.dry_run:
            tsf.write_output(f'{self.vm_name}: Would shut down the guest OS')
            return

        self.result.state = RunState.SHUTTING_DOWN
        try:
            tsf.shutdown_guest(self.vm)
        except Exception as e:
            raise tsf.ShutdownFailed(
                f'{self.vm_name}: Guest shutdown request rejected: {tsf.fault_message(e)}'
            ) from e
        self.result.shutdown_requested = True

        timeout = self.options.shutdown_timeout
        if tsf.wait_for_poweroff(self.vm, timeout,
                                 poll_interval=self.options.poll_interval,
                                 max_poll_interval=self.options.max_poll_interval,
                                 check=self.guard.check):
            tsf.write_output(f'{self.vm_name}: Powered off successfully')
            return

        if not self.options.force_poweroff:
            raise tsf.ShutdownTimeout(f'{self.vm_name}: Guest shutdown did not complete within {timeout}s')

        tsf.write_output(f'{self.vm_name}: Graceful shutdown timeout, forcing power off')
        try:
            if not tsf.power_off_vm(self.vm):
                raise tsf.ShutdownTimeout(f'{self.vm_name}: VM is {tsf.get_power_state(self.vm)} after forced power off')
        except Exception as e:
            raise tsf.ShutdownTimeout(f'{self.vm_name}: Forced power off failed: {tsf.fault_message(e)}') from e
        self.result.forced_poweroff = True

    def configure(self):
        """
        Write every time sync key. The first rejected write stops the batch;
        the outcomes of all keys are kept in self.result.writes.
        """
        if self.options.dry_run:
            for key in tsf.TIMESYNC_KEYS:
                tsf.write_output(f'{self.vm_name}: Would set {key} = {tsf.TIMESYNC_VALUE}')
            return

        self.result.state = RunState.CONFIGURING
        if not tsf.is_powered_off(self.vm):
            raise tsf.ConfigWriteFailed(
                f'{self.vm_name}: Refusing to write settings while VM is {tsf.get_power_state(self.vm)}'
            )

        outcomes = self.result.writes
        with self.guard.critical():
            for key in tsf.TIMESYNC_KEYS:
                if outcomes and outcomes[-1].outcome != WriteStatus.WRITTEN:
                    outcomes.append(WriteOutcome(key, WriteStatus.SKIPPED))
                    continue
                try:
                    tsf.set_extra_config(self.vm, key, tsf.TIMESYNC_VALUE)
                except Exception as e:
                    msg = tsf.fault_message(e)
                    tsf.write_output(f'{self.vm_name}: Failed to set {key}: {msg}')
                    outcomes.append(WriteOutcome(key, WriteStatus.FAILED, msg))
                    continue
                tsf.write_output(f'{self.vm_name}: Set {key} = {tsf.TIMESYNC_VALUE}')
                outcomes.append(WriteOutcome(key, WriteStatus.WRITTEN))

        failed = [w for w in outcomes if w.outcome == WriteStatus.FAILED]
        if failed:
            raise tsf.ConfigWriteFailed(
                f'{self.vm_name}: Setting {failed[0].key} was rejected; '
                f'{len(self.result.written_keys)} of {len(tsf.TIMESYNC_KEYS)} settings written',
                outcomes=list(outcomes)
            )

    def power_on(self):
        if self.options.dry_run:
            tsf.write_output(f'{self.vm_name}: Would power on (if not already on)')
            return

        if not tsf.is_powered_off(self.vm):
            tsf.write_output(f'{self.vm_name}: Already powered on')
            return

        self.result.state = RunState.POWERING_ON
        try:
            tsf.start_vm(self.vm, wait=self.options.wait_for_poweron,
                         timeout=self.options.poweron_timeout)
        except Exception as e:
            raise tsf.PowerOnFailed(
                f'{self.vm_name}: Power on failed: {tsf.fault_message(e)} (settings changes remain applied)'
            ) from e
        self.result.powered_on = True

    def report(self):
        """Read the settings back; a failed read leaves after empty but does not fail the run"""
        try:
            self.result.after = tsf.get_extra_config(self.vm)
        except Exception as e:
            self.result.error = f'Read back failed: {tsf.fault_message(e)}'
            tsf.write_output(f'WARNING: {self.vm_name}: Unable to read settings back: {tsf.fault_message(e)}')
        self.result.state = RunState.DONE

#==============================================================================
# OUTPUT
#==============================================================================

def print_snapshot(title, values):
    tsf.write_output(title)
    for key in tsf.TIMESYNC_KEYS:
        value = values.get(key)
        tsf.write_output(f'  {key:<32} {value if value is not None else "<unset>"}')


def print_report(result: RunResult):
    tsf.write_output('')
    tsf.write_output('=' * 60)
    tsf.write_output(f'Time Sync Report: {result.vm_name}')
    tsf.write_output('=' * 60)
    if result.before:
        print_snapshot('Before:', result.before)
    if result.writes:
        tsf.write_output('Writes:')
        for w in result.writes:
            suffix = f' ({w.message})' if w.message else ''
            tsf.write_output(f'  {w.key:<32} {w.outcome.value}{suffix}')
    if result.after:
        print_snapshot('After:', result.after)
    elif result.state == RunState.DONE:
        tsf.write_output('After: unavailable')
    tsf.write_output(f'Result: {result.state.value}')

#==============================================================================
# CHECK MODE
#==============================================================================

def check_vm(si, vm_name) -> bool:
    """
    Report the current time sync settings without changing anything

    :return: True if all settings are FALSE
    """
    vm = find_vm(si, vm_name)

    try:
        values = tsf.get_extra_config(vm)
        power_state = tsf.get_power_state(vm)
    except Exception as e:
        raise tsf.InspectFailed(f'{vm_name}: Unable to read VM state: {tsf.fault_message(e)}') from e
    print_snapshot(f'{vm_name} ({power_state}):', values)
    compliant = tsf.is_compliant(values)
    if compliant:
        tsf.write_output(f'{vm_name}: Time sync is disabled')
    else:
        tsf.write_output(f'{vm_name}: Time sync is NOT fully disabled')
    return compliant

#==============================================================================
# MAIN FUNCTION
#==============================================================================

def build_parser():
    parser = argparse.ArgumentParser(
        description=SCRIPT_DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exit codes:
  0 success, 1 general error, 2 usage error, 3 connect failed,
  4 VM not found, 5 inspect failed, 6 VMware Tools not running,
  7 shutdown timeout, 8 settings write failed, 9 power on failed,
  10 guest shutdown rejected, 130 cancelled

Examples:
  python3 timesync.py TestVM --vcenter vcsa-01a.site-a.vcf.lab
  python3 timesync.py TestVM --check
  python3 timesync.py TestVM --dry-run
        """
    )

    parser.add_argument('vm', help='Name of the VM to update')
    parser.add_argument('--vcenter', help='vCenter or ESXi host ([TIMESYNC] vcenter)')
    parser.add_argument('--user', help=f'Login user (default {tsf.vcuser})')
    parser.add_argument('--password', help='Password (defaults to creds.txt)')
    parser.add_argument('--port', type=int, help=f'HTTPS port (default {tsf.vcport})')
    parser.add_argument('--config', help=f'Config file (default {tsf.configini})')
    parser.add_argument('--shutdown-timeout', type=int,
                        help='Seconds to wait for guest shutdown, 0 waits forever')
    parser.add_argument('--force-poweroff', action='store_true', default=None,
                        help='Power off the VM if the guest shutdown times out')
    parser.add_argument('--wait-poweron', action='store_true', default=None,
                        help='Wait for the power on task to finish')
    parser.add_argument('--skip-if-compliant', action='store_true', default=None,
                        help='Do nothing if all settings are already FALSE')
    parser.add_argument('--dry-run', action='store_true',
                        help='Show what would be done without making changes')
    parser.add_argument('--check', action='store_true',
                        help='Report current settings only, no changes')
    parser.add_argument('--json', action='store_true', help='Also print the result as JSON')
    parser.add_argument('--version', action='version',
                        version=f'%(prog)s {SCRIPT_VERSION}')
    return parser


def load_options(args) -> Options:
    """Options from [TIMESYNC] with command line overrides applied"""
    options = Options.from_config()
    if args.shutdown_timeout is not None:
        options.shutdown_timeout = args.shutdown_timeout
    if args.force_poweroff is not None:
        options.force_poweroff = args.force_poweroff
    if args.wait_poweron is not None:
        options.wait_for_poweron = args.wait_poweron
    if args.skip_if_compliant is not None:
        options.skip_if_compliant = args.skip_if_compliant
    options.dry_run = args.dry_run
    return options


def main(argv=None):
    """Main entry point, returns the process exit code"""
    args = build_parser().parse_args(argv)

    tsf.init(args.config)
    section = tsf.config_section

    host = args.vcenter or tsf.get_config_value(section, 'vcenter')
    if not host:
        tsf.write_output('ERROR: No endpoint given (--vcenter or [TIMESYNC] vcenter)')
        return EXIT_ERROR

    user = args.user or tsf.get_config_value(section, 'user', tsf.vcuser)
    port = args.port or tsf.get_config_int(section, 'port', tsf.vcport)
    password = args.password if args.password else tsf.get_password()
    if not password:
        tsf.write_output('ERROR: No password provided and creds.txt not found')
        return EXIT_ERROR

    options = load_options(args)

    tsf.write_output('=' * 60)
    tsf.write_output(f'  {SCRIPT_DESCRIPTION}')
    tsf.write_output(f'  Version {SCRIPT_VERSION}')
    tsf.write_output('=' * 60)
    if options.dry_run:
        tsf.write_output('DRY RUN MODE - No changes will be made')

    disabler = None
    try:
        with tsf.CancelGuard() as guard:
            with tsf.vc_session(host, user, password, port=port,
                                attempts=tsf.get_config_int(section, 'connect_attempts', tsf.CONNECT_ATTEMPTS),
                                preflight=tsf.get_config_bool(section, 'preflight', True)) as si:
                guard.check()
                if args.check:
                    return EXIT_OK if check_vm(si, args.vm) else EXIT_ERROR

                disabler = TimeSyncDisabler(si, args.vm, options, guard)
                result = disabler.run()
    except tsf.TimeSyncError as e:
        result = disabler.result if disabler is not None else RunResult(vm_name=args.vm)
        result.state = RunState(e.state)
        result.error = str(e)
        tsf.write_output(f'ERROR: {e}')
        print_report(result)
        if args.json:
            print(result.to_json())
        return e.exit_code

    print_report(result)
    if args.json:
        print(result.to_json())
    if options.dry_run:
        tsf.write_output(f'{args.vm}: DRY RUN complete - no changes made')
    else:
        tsf.write_output(f'{args.vm}: Time sync disabled')
    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())

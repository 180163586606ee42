# tsfunctions.py - HOLFY27 Time Sync Functions Library
# Version 1.0 - October 2026
# Author - HOL Core Team
# vSphere session, VM power and advanced settings helpers for the time sync tool

import os
import time
import signal
import datetime
import logging
import contextlib
import requests
import urllib3
from configparser import ConfigParser
from pyVim import connect
from pyVmomi import vim, vmodl
from pyVim.task import WaitForTask

# Default logging level is WARNING (other levels are DEBUG, INFO, ERROR and CRITICAL)
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)
# Lab vCenters use self-signed certificates
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

#==============================================================================
# STATIC VARIABLES
#==============================================================================

home = '/home/holuser'
holroot = f'{home}/hol'

configname = 'config.ini'
configini = f'/tmp/{configname}'
config_section = 'TIMESYNC'
creds = f'{home}/creds.txt'

logfile = 'timesync.log'
logfiles = [f'{holroot}/{logfile}']

vcuser = 'administrator@vsphere.local'
vcport = 443

# The time sync keys from KB 1189 - each is set to FALSE
TIMESYNC_KEYS = [
    'tools.syncTime',
    'time.synchronize.continue',
    'time.synchronize.restore',
    'time.synchronize.resume.disk',
    'time.synchronize.shrink',
    'time.synchronize.tools.startup',
    'time.synchronize.tools.enable',
    'time.synchronize.resume.host',
]
TIMESYNC_VALUE = 'FALSE'

# Tools states that can service a guest shutdown request
TOOLS_RUNNING = ('guestToolsRunning', 'guestToolsExecutingScripts')
TOOLS_UNKNOWN = 'unknown'

# Shutdown polling
VM_SHUTDOWN_TIMEOUT = 300  # 5 minutes, 0 waits forever
VM_SHUTDOWN_POLL_INTERVAL = 1  # seconds, doubled each poll
VM_SHUTDOWN_MAX_POLL_INTERVAL = 5  # seconds
VM_POWERON_TIMEOUT = 300
CONNECT_ATTEMPTS = 3
CONNECT_RETRY_SECONDS = 2

# Config parser
config = ConfigParser()

_password = None

# Console output flag
console_output = True

#==============================================================================
# EXCEPTIONS
#==============================================================================

class TimeSyncError(Exception):
    """Base class for failures that end a run with a distinct exit code"""
    exit_code = 1
    state = 'failed'


class ConnectFailed(TimeSyncError):
    exit_code = 3
    state = 'connect_failed'


class NotFound(TimeSyncError):
    exit_code = 4
    state = 'not_found'


class InspectFailed(TimeSyncError):
    exit_code = 5
    state = 'inspect_failed'


class ToolsNotRunning(TimeSyncError):
    exit_code = 6
    state = 'tools_not_running'


class ShutdownTimeout(TimeSyncError):
    exit_code = 7
    state = 'shutdown_timeout'


class ConfigWriteFailed(TimeSyncError):
    """
    A write in the settings batch was rejected (or refused because the VM
    was not powered off). outcomes lists every key with its result.
    """
    exit_code = 8
    state = 'config_write_failed'

    def __init__(self, msg, outcomes=None):
        super().__init__(msg)
        self.outcomes = outcomes if outcomes is not None else []


class ShutdownFailed(TimeSyncError):
    exit_code = 10
    state = 'shutdown_failed'


class PowerOnFailed(TimeSyncError):
    exit_code = 9
    state = 'power_on_failed'


class Cancelled(TimeSyncError):
    exit_code = 130
    state = 'cancelled'


def fault_message(e) -> str:
    """Readable text for a vSphere fault or a transport error"""
    return getattr(e, 'msg', None) or str(e) or type(e).__name__

#==============================================================================
# INITIALIZATION
#==============================================================================

def init(configfile=None, **kwargs):
    """
    Initialize the tsfunctions module

    :param configfile: config.ini path (defaults to /tmp/config.ini)
    :param kwargs: console - echo output to the console (default True)
    :return: True if a config file was read
    """
    global configini, console_output

    console_output = kwargs.get('console', console_output)
    if configfile:
        configini = configfile

    if not os.path.isfile(configini):
        write_output(f'No config file at {configini} - using defaults')
        return False

    config.read(configini)
    write_output(f'tsfunctions initialized from {configini}')
    return True

#==============================================================================
# CONFIG HELPER FUNCTIONS
#==============================================================================

def get_config_value(section: str, option: str, fallback: str = '') -> str:
    """
    Get a config option value, returning fallback if commented out.

    :param section: Config section name
    :param option: Config option name
    :param fallback: Default value if option doesn't exist or is commented
    :return: Config value or fallback
    """
    if not config.has_option(section, option):
        return fallback

    value = config.get(section, option).strip()

    if not value or value.startswith('#') or value.startswith(';'):
        return fallback

    return value


def get_config_int(section: str, option: str, fallback: int = 0) -> int:
    """Integer variant of get_config_value, falls back on unparsable values"""
    value = get_config_value(section, option)
    if not value:
        return fallback
    try:
        return int(value)
    except ValueError:
        write_output(f'WARNING: [{section}] {option} = {value} is not an integer, using {fallback}')
        return fallback


def get_config_bool(section: str, option: str, fallback: bool = False) -> bool:
    """Boolean variant of get_config_value (true/false, yes/no, on/off, 1/0)"""
    value = get_config_value(section, option).lower()
    if value in ('true', 'yes', 'on', '1'):
        return True
    if value in ('false', 'no', 'off', '0'):
        return False
    return fallback

#==============================================================================
# PASSWORD FUNCTIONS
#==============================================================================

def get_password() -> str:
    """
    Get the lab password from creds.txt.

    The password is cached in _password after first read.

    :return: Password string, or empty string if not found
    """
    global _password
    if _password is None:
        if os.path.isfile(creds):
            with open(creds, 'r') as f:
                _password = f.read().strip()
    return _password if _password else ''

#==============================================================================
# OUTPUT AND LOGGING
#==============================================================================

def write_output(msg, **kwargs):
    """
    Write output to log files and optionally to console

    :param msg: Message to write
    :param kwargs:
        logfile - specific logfile path
        console - override console output setting (True/False)
    """
    timestamp = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    formatted_msg = f'[{timestamp}] {msg}'

    lfile = kwargs.get('logfile', None)
    print_to_console = kwargs.get('console', console_output)

    if lfile:
        try:
            with open(lfile, 'a') as f:
                f.write(formatted_msg + '\n')
        except OSError as e:
            print(f'Error writing to {lfile}: {e}')
    else:
        for lf in logfiles:
            try:
                os.makedirs(os.path.dirname(lf), exist_ok=True)
                with open(lf, 'a') as f:
                    f.write(formatted_msg + '\n')
            except OSError as e:
                logger.debug('Could not write to %s: %s', lf, e)

    if print_to_console:
        print(formatted_msg)

#==============================================================================
# NETWORK TESTING
#==============================================================================

def test_endpoint(host, port=vcport, **kwargs):
    """
    Test whether a vSphere SDK endpoint answers over HTTPS

    :param host: vCenter/ESXi hostname
    :param port: HTTPS port
    :param kwargs: timeout
    :return: True if the SDK version document is served
    """
    timeout = kwargs.get('timeout', 10)
    url = f'https://{host}:{port}/sdk/vimServiceVersions.xml'

    try:
        session = requests.Session()
        session.trust_env = False  # Ignore proxy environment vars

        response = session.get(url, verify=False, timeout=timeout)
        return response.status_code == 200
    except requests.RequestException as e:
        logger.debug('Endpoint check %s failed: %s', url, e)
        return False

#==============================================================================
# VSPHERE OPERATIONS
#==============================================================================

def connect_vc(host, user, password=None, **kwargs):
    """
    Connect to a vCenter or ESXi host, retrying transient failures

    :param host: vCenter/ESXi hostname
    :param user: Username
    :param password: Password (defaults to creds.txt)
    :param kwargs: port, attempts, retry_seconds
    :return: ServiceInstance
    :raises ConnectFailed: credentials rejected or endpoint unreachable
    """
    if password is None:
        password = get_password()

    port = kwargs.get('port', vcport)
    attempts = max(1, kwargs.get('attempts', CONNECT_ATTEMPTS))
    delay = kwargs.get('retry_seconds', CONNECT_RETRY_SECONDS)

    for attempt in range(1, attempts + 1):
        try:
            si = connect.SmartConnect(
                host=host,
                user=user,
                pwd=password,
                port=port,
                disableSslCertValidation=True
            )
            write_output(f'Connected to {host}')
            return si
        except vim.fault.InvalidLogin as e:
            raise ConnectFailed(f'Login to {host} as {user} rejected: {e.msg}') from e
        except Exception as e:
            write_output(f'Failed to connect to {host} (attempt {attempt}/{attempts}): {e}')
            if attempt >= attempts:
                raise ConnectFailed(f'Could not connect to {host} after {attempts} attempt(s): {e}') from e
            time.sleep(delay)
            delay *= 2


@contextlib.contextmanager
def vc_session(host, user, password=None, **kwargs):
    """
    Scoped vSphere session: disconnects on every exit path

    :param kwargs: port, attempts, retry_seconds, preflight
    """
    port = kwargs.get('port', vcport)
    if kwargs.get('preflight', False) and not test_endpoint(host, port):
        raise ConnectFailed(f'{host}:{port} is not reachable or is not a vSphere endpoint')

    si = connect_vc(host, user, password, **kwargs)
    try:
        yield si
    finally:
        try:
            connect.Disconnect(si)
            write_output(f'Disconnected from {host}')
        except Exception as e:
            write_output(f'WARNING: Disconnect from {host} failed: {e}')


def get_vm(si, name):
    """
    Get a VM by name

    :param si: ServiceInstance
    :param name: VM name
    :return: VM object or None
    """
    content = si.RetrieveContent()
    container = content.viewManager.CreateContainerView(
        content.rootFolder, [vim.VirtualMachine], True
    )

    try:
        for vm in container.view:
            if vm.name == name:
                return vm
    finally:
        container.Destroy()
    return None


def get_power_state(vm):
    """Current power state of a VM as a string"""
    return str(vm.runtime.powerState)


def is_powered_off(vm) -> bool:
    return vm.runtime.powerState == vim.VirtualMachinePowerState.poweredOff


def get_tools_status(vm) -> str:
    """
    VMware Tools running status, 'unknown' when it cannot be read

    :param vm: VM object
    :return: guestToolsRunning, guestToolsNotRunning, ... or unknown
    """
    try:
        status = vm.guest.toolsRunningStatus
    except vmodl.MethodFault as e:
        write_output(f'{vm.name}: Unable to check Tools status: {e.msg}')
        return TOOLS_UNKNOWN
    return str(status) if status else TOOLS_UNKNOWN


def wait_for_poweroff(vm, timeout=VM_SHUTDOWN_TIMEOUT, **kwargs):
    """
    Poll a VM until it reports poweredOff

    The interval starts at poll_interval and doubles up to max_poll_interval.

    :param vm: VM object
    :param timeout: seconds to wait, 0 waits forever
    :param kwargs: poll_interval, max_poll_interval, check - callable run
        before each poll (raises to abort the wait)
    :return: True once powered off, False on timeout
    """
    interval = kwargs.get('poll_interval', VM_SHUTDOWN_POLL_INTERVAL)
    max_interval = kwargs.get('max_poll_interval', VM_SHUTDOWN_MAX_POLL_INTERVAL)
    check = kwargs.get('check', None)

    start_time = time.monotonic()
    while True:
        if check:
            check()
        if is_powered_off(vm):
            return True
        elapsed = time.monotonic() - start_time
        if timeout and elapsed >= timeout:
            return False
        logger.debug('%s: still %s after %.0fs', vm.name, vm.runtime.powerState, elapsed)
        time.sleep(interval)
        interval = min(interval * 2, max_interval)


def shutdown_guest(vm):
    """Request a graceful guest OS shutdown through VMware Tools"""
    write_output(f'{vm.name}: Initiating graceful guest shutdown')
    vm.ShutdownGuest()


def power_off_vm(vm):
    """
    Hard power off a VM, only if it is still powered on

    :return: True if the VM is powered off afterwards
    """
    if vm.runtime.powerState != vim.VirtualMachinePowerState.poweredOn:
        write_output(f'{vm.name}: Not powered on ({vm.runtime.powerState}) - no power off needed')
        return is_powered_off(vm)
    write_output(f'{vm.name}: Forcing power off')
    WaitForTask(vm.PowerOffVM_Task())
    if not is_powered_off(vm):
        write_output(f'{vm.name}: Still {vm.runtime.powerState} after power off task')
        return False
    write_output(f'{vm.name}: Powered off successfully (forced)')
    return True


def start_vm(vm, wait=False, timeout=VM_POWERON_TIMEOUT):
    """
    Power on a VM

    :param vm: VM object
    :param wait: block until the power on task finishes
    :param timeout: seconds to wait for the task when wait is set
    :return: the PowerOnVM_Task
    """
    task = vm.PowerOnVM_Task()
    write_output(f'{vm.name}: Power on requested')
    if wait:
        wait_for_task(task, timeout)
        write_output(f'{vm.name}: Powered on')
    return task


def wait_for_task(task, timeout):
    """
    Wait for a vSphere task, bounded by timeout seconds

    :raises TimeoutError: the task did not finish in time
    :raises vmodl.MethodFault: the task failed
    """
    start_time = time.monotonic()
    while task.info.state not in (vim.TaskInfo.State.success, vim.TaskInfo.State.error):
        if time.monotonic() - start_time > timeout:
            raise TimeoutError(f'Task {task.info.key} did not finish within {timeout}s')
        time.sleep(1)
    if task.info.state == vim.TaskInfo.State.error:
        raise task.info.error
    return task.info.result

#==============================================================================
# VM ADVANCED SETTINGS
#==============================================================================

def get_extra_config(vm, keys=None) -> dict:
    """
    Read VM advanced settings (extraConfig)

    :param vm: VM object
    :param keys: keys to return (default: the time sync keys); missing keys map to None
    :return: dict of {key: value or None}
    """
    if keys is None:
        keys = TIMESYNC_KEYS
    values = dict.fromkeys(keys)
    for option in vm.config.extraConfig:
        if option.key in values:
            values[option.key] = option.value
    return values


def set_extra_config(vm, key, value):
    """
    Write a single VM advanced setting and wait for the reconfigure task

    :raises vmodl.MethodFault: the endpoint rejected the change
    """
    option = vim.option.OptionValue(key=key, value=value)
    spec = vim.vm.ConfigSpec(extraConfig=[option])
    WaitForTask(vm.ReconfigVM_Task(spec=spec))


def is_compliant(values: dict) -> bool:
    """True when every time sync key reads FALSE"""
    return all(
        str(values.get(key)).upper() == TIMESYNC_VALUE
        for key in TIMESYNC_KEYS
    )

#==============================================================================
# CANCELLATION
#==============================================================================

class CancelGuard:
    """
    SIGINT/SIGTERM handling for a run

    A signal sets the requested flag. check() raises Cancelled, except inside
    critical() where the request is held until the block exits.
    """

    def __init__(self, signals=(signal.SIGINT, signal.SIGTERM)):
        self.signals = signals
        self.requested = False
        self.in_critical = False
        self._previous = {}

    def __enter__(self):
        for sig in self.signals:
            self._previous[sig] = signal.signal(sig, self._handler)
        return self

    def __exit__(self, *exc):
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)
        self._previous.clear()
        return False

    def _handler(self, signum, frame):
        self.request(signal.Signals(signum).name)

    def request(self, reason='external request'):
        self.requested = True
        if self.in_critical:
            write_output(f'Cancellation ({reason}) deferred until the settings batch completes')
        else:
            write_output(f'Cancellation requested ({reason})')

    def check(self):
        if self.requested and not self.in_critical:
            raise Cancelled('Run cancelled before completion')

    @contextlib.contextmanager
    def critical(self):
        self.in_critical = True
        try:
            yield
        finally:
            self.in_critical = False

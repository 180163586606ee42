#!/usr/bin/env python3
# conftest.py - HOLFY27 Time Sync Pytest Configuration and Fixtures
# Version 1.0 - October 2026
# Author - HOL Core Team
# Shared fixtures for all test modules

import pytest
import os
import sys
import itertools
from unittest.mock import MagicMock, patch
from configparser import ConfigParser

# Add parent directory to path for imports
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, parent_dir)

from pyVmomi import vim

import tsfunctions as tsf

#==============================================================================
# FAKE VSPHERE OBJECTS
#==============================================================================

class FakeRuntime:
    """VM runtime whose power state can flip to poweredOff after N reads"""

    def __init__(self, power_state):
        self._state = power_state
        self.off_after = None

    @property
    def powerState(self):
        if self.off_after is not None:
            if self.off_after <= 0:
                self._state = 'poweredOff'
                self.off_after = None
            else:
                self.off_after -= 1
        return self._state

    @powerState.setter
    def powerState(self, value):
        self._state = value


class FakeVM:
    """
    Stand-in for vim.VirtualMachine that applies reconfigure and power calls
    to its own state and records them in calls
    """

    def __init__(self, name='TestVM', power_state='poweredOff',
                 tools='guestToolsRunning', extra=None, shutdown_polls=2):
        self.name = name
        self.runtime = FakeRuntime(power_state)
        self.guest = MagicMock(toolsRunningStatus=tools)
        self.config = MagicMock()
        self.config.extraConfig = [
            vim.option.OptionValue(key=k, value=v) for k, v in (extra or {}).items()
        ]
        self.shutdown_polls = shutdown_polls
        self.calls = []
        self.reconfig_error = {}  # key -> fault raised when that key is written
        self.on_reconfig = None
        self.poweron_error = None
        self.poweroff_ignored = False

    @property
    def settings(self):
        return {opt.key: opt.value for opt in self.config.extraConfig}

    @property
    def writes(self):
        return [c[1] for c in self.calls if c[0] == 'reconfig']

    def _task(self):
        task = MagicMock()
        task.info.state = 'success'
        task.info.error = None
        return task

    def ShutdownGuest(self):
        self.calls.append(('shutdown',))
        self.runtime.off_after = self.shutdown_polls

    def ReconfigVM_Task(self, spec):
        for option in spec.extraConfig:
            if option.key in self.reconfig_error:
                raise self.reconfig_error[option.key]
            self.calls.append(('reconfig', option.key, option.value, self.runtime._state))
            existing = [o for o in self.config.extraConfig if o.key == option.key]
            if existing:
                existing[0].value = option.value
            else:
                self.config.extraConfig.append(
                    vim.option.OptionValue(key=option.key, value=option.value))
            if self.on_reconfig:
                self.on_reconfig(option.key)
        return self._task()

    def PowerOnVM_Task(self):
        if self.poweron_error is not None:
            raise self.poweron_error
        self.calls.append(('poweron',))
        self.runtime.powerState = 'poweredOn'
        return self._task()

    def PowerOffVM_Task(self):
        self.calls.append(('poweroff',))
        if not self.poweroff_ignored:
            self.runtime.off_after = None
            self.runtime.powerState = 'poweredOff'
        return self._task()


def make_si(*vms):
    """ServiceInstance mock whose container view holds the given VMs"""
    si = MagicMock()
    content = si.RetrieveContent.return_value
    content.viewManager.CreateContainerView.return_value.view = list(vms)
    return si

#==============================================================================
# FIXTURES - Mock Objects
#==============================================================================

@pytest.fixture
def fake_vm():
    return FakeVM()


@pytest.fixture
def compliant_settings():
    return {key: 'FALSE' for key in tsf.TIMESYNC_KEYS}


@pytest.fixture(autouse=True)
def isolated_tsf(monkeypatch, tmp_path):
    """Point tsfunctions at temporary files and a fresh config for every test"""
    monkeypatch.setattr(tsf, 'config', ConfigParser())
    monkeypatch.setattr(tsf, 'configini', str(tmp_path / 'config.ini'))
    monkeypatch.setattr(tsf, 'logfiles', [str(tmp_path / 'timesync.log')])
    monkeypatch.setattr(tsf, 'creds', str(tmp_path / 'creds.txt'))
    monkeypatch.setattr(tsf, '_password', None)
    monkeypatch.setattr(tsf, 'console_output', False)
    yield tmp_path


@pytest.fixture
def no_wait():
    """Skip real task waits and sleeps; monotonic time advances 1s per call"""
    with patch('tsfunctions.WaitForTask') as mock_wait, \
            patch('tsfunctions.time') as mock_time:
        mock_time.monotonic.side_effect = itertools.count(0, 1)
        yield mock_wait, mock_time


@pytest.fixture
def temp_config_ini(isolated_tsf):
    """Create a temporary config.ini with a [TIMESYNC] section"""
    config_path = isolated_tsf / 'config.ini'

    config = ConfigParser()
    config.add_section('TIMESYNC')
    config.set('TIMESYNC', 'vcenter', 'vcsa-01a.site-a.vcf.lab')
    config.set('TIMESYNC', 'user', 'administrator@vsphere.local')
    config.set('TIMESYNC', 'shutdown_timeout', '60')
    config.set('TIMESYNC', 'preflight', 'false')
    config.set('TIMESYNC', 'connect_attempts', '1')

    with open(config_path, 'w') as f:
        config.write(f)

    return str(config_path)


@pytest.fixture
def creds_file(isolated_tsf):
    path = isolated_tsf / 'creds.txt'
    path.write_text('MOCK_PW_CHECK_VALUE\n')
    return str(path)


@pytest.fixture
def mock_requests():
    """Mock requests for endpoint pre-flight tests"""
    with patch('requests.Session') as mock_session:
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.text = '<namespaces version="1.0"/>'

        mock_instance = MagicMock()
        mock_instance.get.return_value = mock_response
        mock_session.return_value = mock_instance

        yield mock_session

#==============================================================================
# MARKERS
#==============================================================================

def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )

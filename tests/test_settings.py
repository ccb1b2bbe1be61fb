import logging

import pytest

from ovs_exporter.debug_util import configure_logging, dbg, logger
from ovs_exporter.settings import ExporterSettings


def test_defaults_from_empty_environment():
    s = ExporterSettings.from_env({})
    assert s == ExporterSettings()
    assert (s.port, s.poll_interval, s.timeout, s.max_workers) == (9475, 15, 2.0, 4)
    assert s.telemetry_path == '/metrics'
    assert s.rundir == '/var/run/openvswitch'


def test_environment_overrides():
    s = ExporterSettings.from_env({
        'OVS_EXPORTER_LISTEN_ADDRESS': '127.0.0.1',
        'OVS_EXPORTER_PORT': '9999',
        'OVS_EXPORTER_TELEMETRY_PATH': 'stats',
        'OVS_EXPORTER_POLL_INTERVAL': '30',
        'OVS_EXPORTER_TIMEOUT': '0.5',
        'OVS_EXPORTER_MAX_WORKERS': '8',
        'OVS_EXPORTER_LOG_LEVEL': 'DEBUG',
        'OVS_APPCTL_BIN': '/usr/local/bin/ovs-appctl',
        'OVS_RUNDIR': '/run/openvswitch',
    })
    assert s.listen_address == '127.0.0.1'
    assert s.port == 9999
    assert s.telemetry_path == '/stats'
    assert s.poll_interval == 30
    assert s.timeout == 0.5
    assert s.max_workers == 8
    assert s.log_level == 'debug'
    assert s.appctl_bin == '/usr/local/bin/ovs-appctl'
    assert s.vsctl_bin == 'ovs-vsctl'
    assert s.rundir == '/run/openvswitch'


@pytest.mark.parametrize('key,value,attr,expected', [
    ('OVS_EXPORTER_PORT', 'abc', 'port', 9475),
    ('OVS_EXPORTER_POLL_INTERVAL', '0', 'poll_interval', 1),
    ('OVS_EXPORTER_POLL_INTERVAL', '1.5', 'poll_interval', 15),
    ('OVS_EXPORTER_TIMEOUT', '-1', 'timeout', 2.0),
    ('OVS_EXPORTER_TIMEOUT', 'soon', 'timeout', 2.0),
    ('OVS_EXPORTER_MAX_WORKERS', '', 'max_workers', 4),
])
def test_malformed_values_fall_back(key, value, attr, expected):
    assert getattr(ExporterSettings.from_env({key: value}), attr) == expected


def test_configure_logging_levels():
    configure_logging('warn')
    assert logger.level == logging.WARNING
    configure_logging('DEBUG')
    assert logger.level == logging.DEBUG
    with pytest.raises(ValueError, match='invalid log level: loud'):
        configure_logging('loud')


def test_dbg_gated_by_environment(monkeypatch, caplog):
    configure_logging('info')
    monkeypatch.delenv('DEBUG_VERBOSE', raising=False)
    with caplog.at_level(logging.INFO, logger='ovs_exporter'):
        dbg('hidden')
        monkeypatch.setenv('DEBUG_VERBOSE', '1')
        dbg('shown')
    messages = [r.getMessage() for r in caplog.records]
    assert '[debug] shown' in messages
    assert '[debug] hidden' not in messages

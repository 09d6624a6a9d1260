"""Flask CLI commands."""
import json
from unittest.mock import patch

from agriledger.services.audit_sink import AuditSink


def test_seed_catalog_command_is_idempotent(runner):
    result = runner.invoke(args=['seed-catalog'])
    assert result.exit_code == 0
    assert '0 new statuses, 0 new event types' in result.output


def test_trace_command_prints_story(app, runner, harvest):
    code = harvest(12.0).batch_code

    result = runner.invoke(args=['trace', code])

    assert result.exit_code == 0, result.output
    story = json.loads(result.output)
    assert story['batch']['batch_code'] == code
    assert story['summary']['origin'] == 'Harvested from farm'


def test_trace_command_unknown_code(runner):
    result = runner.invoke(args=['trace', 'BATCH-19990101-000000-ZZZZ'])
    assert result.exit_code != 0
    assert 'not found' in result.output


def test_audit_health_command(app, runner):
    app.extensions['audit_sink'] = AuditSink(base_url=None)
    assert 'disabled' in runner.invoke(args=['audit-health']).output

    app.extensions['audit_sink'] = AuditSink(base_url='http://audit.local:5001')
    with patch.object(AuditSink, 'is_healthy', return_value=True):
        result = runner.invoke(args=['audit-health'])
    assert result.exit_code == 0
    assert 'reachable' in result.output

    with patch.object(AuditSink, 'is_healthy', return_value=False):
        result = runner.invoke(args=['audit-health'])
    assert result.exit_code != 0

"""Tests for the deployment monitor state machine."""

import json

import pytest

from deploy_autofix.alerts import (
    DEPLOYMENT_ERROR,
    DEPLOYMENT_SUCCEEDED,
    ESCALATION,
    PIPELINE_FAILURE,
    AlertSink,
)
from deploy_autofix.analyzer import RepositoryAnalyzer
from deploy_autofix.config import PlatformConfig, RemediationConfig
from deploy_autofix.errors import InvalidTransition, PlatformAPIError, SignatureVerificationFailure
from deploy_autofix.executor import RemediationExecutor
from deploy_autofix.leases import InMemoryLeaseService
from deploy_autofix.monitor import (
    HEALTH_CHECK_WARNING,
    RESOURCE_CONSTRAINT,
    DeploymentMonitor,
    TargetState,
    sign_payload,
    verify_signature,
)
from deploy_autofix.pipeline import RemediationPipeline
from deploy_autofix.platform_client import ProbeOutcome
from deploy_autofix.store import RingBufferStore

WEBHOOK_SECRET = "whsec-test"

TARGET = "svc-1"
DB_FAILURE = {"type": "deployment.failed", "data": {
    "id": "dep-1", "serviceId": TARGET, "error": "Error: connect ECONNREFUSED 127.0.0.1:27017",
}}


@pytest.fixture
def sink():
    return AlertSink(RingBufferStore(100))


@pytest.fixture
def make_monitor(github, sink, library, sleep, fake_platform):
    def make(platform=None, repository=None, auto_merge=False):
        executor = RemediationExecutor(
            github, sink.store, InMemoryLeaseService(60),
            RemediationConfig(auto_merge=auto_merge, merge_grace_seconds=0), sleep=sleep,
        )
        pipeline = RemediationPipeline(
            analyzer=RepositoryAnalyzer(github), executor=executor, sink=sink, library=library,
        )
        return DeploymentMonitor(
            pipeline=pipeline,
            platform=platform or fake_platform(),
            sink=sink,
            config=PlatformConfig(
                service_id=TARGET,
                webhook_secret=WEBHOOK_SECRET,
                restart_delay_seconds=30,
                database_host="db.internal",
            ),
            repository=repository,
            sleep=sleep,
        )

    return make


async def alert_types(sink):
    return (await sink.get_alerts())["by_type"]


class TestSignatures:
    """Tests for webhook HMAC verification."""

    def test_valid_signature(self):
        raw = b'{"type": "deployment.succeeded"}'
        verify_signature(raw, sign_payload(raw, WEBHOOK_SECRET), WEBHOOK_SECRET)

    def test_uppercase_hex_accepted(self):
        raw = b"{}"
        verify_signature(raw, sign_payload(raw, WEBHOOK_SECRET).upper(), WEBHOOK_SECRET)

    @pytest.mark.parametrize("signature", [None, "", "deadbeef", "\xe9" * 64, "sha256=ünïcode"])
    def test_invalid_signature(self, signature):
        with pytest.raises(SignatureVerificationFailure):
            verify_signature(b"{}", signature, WEBHOOK_SECRET)

    def test_missing_secret_rejects_everything(self):
        with pytest.raises(SignatureVerificationFailure):
            verify_signature(b"{}", sign_payload(b"{}", ""), None)

    def test_tampered_body(self, make_monitor):
        monitor = make_monitor()
        signature = sign_payload(b'{"type": "deployment.succeeded"}', WEBHOOK_SECRET)
        with pytest.raises(SignatureVerificationFailure):
            monitor.parse_webhook(b'{"type": "deployment.failed"}', signature)

    def test_non_object_body(self, make_monitor):
        raw = b"[1, 2]"
        with pytest.raises(ValueError):
            make_monitor().parse_webhook(raw, sign_payload(raw, WEBHOOK_SECRET))


class TestTransitions:
    def test_defaults_to_healthy(self, make_monitor):
        assert make_monitor().state("anything") == TargetState.HEALTHY

    def test_illegal_transition_raises(self, make_monitor):
        monitor = make_monitor()
        with pytest.raises(InvalidTransition):
            monitor._transition(TARGET, TargetState.VERIFYING)

    def test_acknowledge_requires_escalation(self, make_monitor):
        with pytest.raises(InvalidTransition):
            make_monitor().acknowledge(TARGET)


class TestProbe:
    """Tests for on-demand probes."""

    @pytest.mark.asyncio
    async def test_refused_triggers_emergency_restart(self, fake_platform, make_monitor, sleep):
        platform = fake_platform([ProbeOutcome.CONNECTION_REFUSED, ProbeOutcome.HEALTHY])
        monitor = make_monitor(platform)

        await monitor.probe(TARGET)

        assert platform.redeploys == 1
        assert platform.probe_calls == 2
        assert sleep.calls == [30]
        assert monitor.state(TARGET) == TargetState.HEALTHY

    @pytest.mark.asyncio
    async def test_still_refused_escalates_until_acknowledged(self, fake_platform, make_monitor, sink):
        platform = fake_platform([ProbeOutcome.CONNECTION_REFUSED, ProbeOutcome.CONNECTION_REFUSED])
        monitor = make_monitor(platform)

        await monitor.probe(TARGET)

        assert monitor.state(TARGET) == TargetState.ESCALATED
        assert (await alert_types(sink))[ESCALATION] == 1

        # Escalated targets ignore further probes until acknowledged
        platform.probes = [ProbeOutcome.CONNECTION_REFUSED]
        await monitor.probe(TARGET)
        assert platform.redeploys == 1

        assert monitor.acknowledge(TARGET) == TargetState.HEALTHY
        assert monitor.state(TARGET) == TargetState.HEALTHY

    @pytest.mark.asyncio
    async def test_redeploy_failure_escalates(self, fake_platform, make_monitor):
        platform = fake_platform([ProbeOutcome.CONNECTION_REFUSED])
        platform.redeploy_error = PlatformAPIError("RAILWAY_SERVICE_ID is not configured")
        monitor = make_monitor(platform)

        await monitor.probe(TARGET)

        assert monitor.state(TARGET) == TargetState.ESCALATED

    @pytest.mark.asyncio
    async def test_unexpected_restart_error_escalates(self, fake_platform, make_monitor, sink):
        platform = fake_platform([ProbeOutcome.CONNECTION_REFUSED])
        platform.redeploy_error = RuntimeError("Expecting value: line 1 column 1")
        monitor = make_monitor(platform)

        await monitor.probe(TARGET)

        assert monitor.state(TARGET) == TargetState.ESCALATED
        assert (await alert_types(sink))[PIPELINE_FAILURE] == 1
        assert sink.component_health()["monitor"] == "degraded"

        # The target is not stuck: it can be acknowledged and probed again
        assert monitor.acknowledge(TARGET) == TargetState.HEALTHY
        platform.redeploy_error = None
        platform.probes = [ProbeOutcome.CONNECTION_REFUSED, ProbeOutcome.HEALTHY]
        await monitor.probe(TARGET)
        assert platform.redeploys == 1
        assert monitor.state(TARGET) == TargetState.HEALTHY

    @pytest.mark.asyncio
    async def test_server_error_with_datastore_down(self, fake_platform, make_monitor):
        platform = fake_platform([ProbeOutcome.SERVER_ERROR], datastore_ok=False)
        monitor = make_monitor(platform)

        await monitor.probe(TARGET)

        assert platform.datastore_checks == 1
        # Confident database diagnosis, but no repository to fix
        assert monitor.state(TARGET) == TargetState.UNHEALTHY

    @pytest.mark.asyncio
    async def test_unexplained_server_error_escalates(self, fake_platform, make_monitor):
        platform = fake_platform([ProbeOutcome.SERVER_ERROR], datastore_ok=True)
        monitor = make_monitor(platform)

        await monitor.probe(TARGET)

        assert monitor.state(TARGET) == TargetState.ESCALATED

    @pytest.mark.asyncio
    async def test_client_error_warns(self, fake_platform, make_monitor, sink):
        monitor = make_monitor(fake_platform([ProbeOutcome.CLIENT_ERROR]))

        result = await monitor.probe(TARGET)

        assert result.status_code == 404
        assert monitor.state(TARGET) == TargetState.HEALTHY
        assert await alert_types(sink) == {HEALTH_CHECK_WARNING: 1}

    @pytest.mark.asyncio
    async def test_timeout_warns_resource_constraint(self, fake_platform, make_monitor, sink):
        monitor = make_monitor(fake_platform([ProbeOutcome.TIMEOUT]))

        await monitor.probe(TARGET)

        assert monitor.state(TARGET) == TargetState.HEALTHY
        assert await alert_types(sink) == {RESOURCE_CONSTRAINT: 1}

    @pytest.mark.asyncio
    async def test_healthy_probe_clears_unhealthy(self, fake_platform, make_monitor):
        platform = fake_platform([ProbeOutcome.SERVER_ERROR, ProbeOutcome.HEALTHY], datastore_ok=False)
        monitor = make_monitor(platform)

        await monitor.probe(TARGET)
        assert monitor.state(TARGET) == TargetState.UNHEALTHY
        await monitor.probe(TARGET)

        assert monitor.state(TARGET) == TargetState.HEALTHY


class TestDeploymentEvents:
    """Tests for webhook-driven remediation."""

    @pytest.mark.asyncio
    async def test_succeeded_event(self, make_monitor, sink):
        monitor = make_monitor()

        await monitor.handle_event({"type": "deployment.succeeded", "data": {"id": "dep-2"}})

        assert monitor.state(TARGET) == TargetState.HEALTHY
        assert await alert_types(sink) == {DEPLOYMENT_SUCCEEDED: 1}

    @pytest.mark.asyncio
    async def test_unknown_event_ignored(self, make_monitor, sink):
        assert await make_monitor().handle_event({"type": "volume.created"}) is None
        assert await alert_types(sink) == {}

    @pytest.mark.asyncio
    async def test_failure_opens_pull_request(self, make_monitor, fake_repo, sink):
        repo = fake_repo()
        monitor = make_monitor(repository="acme/shop")

        result = await monitor.handle_event(DB_FAILURE)

        assert result.attempt.success is True
        assert len(repo.pulls) == 1
        # The PR awaits review, so the deployment is still broken
        assert monitor.state(TARGET) == TargetState.UNHEALTHY
        assert (await alert_types(sink))[DEPLOYMENT_ERROR] == 1

    @pytest.mark.asyncio
    async def test_failure_auto_merged_and_verified(self, fake_platform, make_monitor, fake_repo):
        repo = fake_repo()
        platform = fake_platform([ProbeOutcome.HEALTHY])
        monitor = make_monitor(platform, repository="acme/shop", auto_merge=True)

        result = await monitor.handle_event(DB_FAILURE)

        assert result.attempt.auto_merged is True
        assert repo.merges == [1]
        assert platform.redeploys == 1
        assert monitor.state(TARGET) == TargetState.HEALTHY

    @pytest.mark.asyncio
    async def test_failure_includes_build_logs(self, fake_platform, make_monitor):
        platform = fake_platform(logs="npm ERR! code ELIFECYCLE")
        monitor = make_monitor(platform)

        result = await monitor.handle_event(DB_FAILURE)

        assert "npm ERR! code ELIFECYCLE" in result.report.raw_message

    @pytest.mark.asyncio
    async def test_unexpected_log_fetch_error_escalates(self, fake_platform, make_monitor, sink):
        class BrokenLogs(fake_platform):
            async def fetch_build_logs(self, deployment_id):
                raise KeyError("deployment")

        monitor = make_monitor(BrokenLogs())

        assert await monitor.handle_event(DB_FAILURE) is None
        assert monitor.state(TARGET) == TargetState.ESCALATED
        assert (await alert_types(sink))[PIPELINE_FAILURE] == 1

    @pytest.mark.asyncio
    async def test_duplicate_event_while_in_flight(self, make_monitor, sink):
        monitor = make_monitor()
        monitor._states[TARGET] = TargetState.REMEDIATING

        assert await monitor.handle_event(DB_FAILURE) is None
        assert monitor.state(TARGET) == TargetState.REMEDIATING

    @pytest.mark.asyncio
    async def test_parse_and_handle_signed_event(self, make_monitor):
        monitor = make_monitor()
        raw = json.dumps({"type": "service.updated", "data": {"serviceId": "svc-2"}}).encode()

        event = monitor.parse_webhook(raw, sign_payload(raw, WEBHOOK_SECRET))
        result = await monitor.handle_event(event)

        assert result.healthy is True
        assert monitor.state("svc-2") == TargetState.HEALTHY

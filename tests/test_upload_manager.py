import subprocess

import pytest

from fakes import APP_ID, FakeStrategy, write_ipa
from flightsign.src.core.errors import InvalidIpaError, UploadFailedError
from flightsign.src.core.upload_manager import (
    PREFERRED_STRATEGY_KEY,
    AltoolStrategy,
    PilotStrategy,
    TransporterStrategy,
    UploadCredentials,
    UploadManager,
    UploadStrategyError,
    default_strategies,
)


@pytest.fixture
def credentials(paths) -> UploadCredentials:
    return UploadCredentials("KEY1234567", "69a6de70-03db-47e3-e053-5b8c7c11a4d1", paths.team_dir / "AuthKey_KEY1234567.p8")


@pytest.fixture
def ipa(tmp_path):
    return write_ipa(tmp_path / "App.ipa")


def test_falls_back_to_the_third_strategy(ipa, credentials, audit, env) -> None:
    strategies = [
        FakeStrategy("altool", failures=1),
        FakeStrategy("transporter", failures=1),
        FakeStrategy("pilot"),
    ]
    manager = UploadManager(strategies, audit, env=env, attempts_per_strategy=1, sleep=lambda s: None)

    outcome = manager.upload(ipa, credentials, APP_ID, "1.0.0", 7)

    assert outcome.strategy == "pilot"
    assert [(a.strategy, a.succeeded) for a in outcome.attempts] == [
        ("altool", False),
        ("transporter", False),
        ("pilot", True),
    ]
    attempts = audit.events("UPLOAD_ATTEMPT")
    assert len(attempts) == 3
    assert "altool attempt 1 FAILED" in attempts[0].status
    assert "pilot attempt 1 SUCCEEDED" in attempts[2].status
    assert attempts[2].build == "7"
    assert env.get(PREFERRED_STRATEGY_KEY) == "pilot"
    assert outcome.ipa.bundle_id == APP_ID


def test_retryable_failures_are_retried_with_backoff(ipa, credentials, audit) -> None:
    sleeps = []
    altool = FakeStrategy("altool", failures=1)
    manager = UploadManager([altool, FakeStrategy("pilot")], audit, base_delay=5.0, sleep=sleeps.append)

    outcome = manager.upload(ipa, credentials, APP_ID)

    assert outcome.strategy == "altool"
    assert altool.calls == 2
    assert sleeps == [5.0]


def test_non_retryable_failure_moves_on_immediately(ipa, credentials, audit) -> None:
    altool = FakeStrategy("altool", failures=5, retryable=False)
    manager = UploadManager([altool, FakeStrategy("pilot")], audit, sleep=lambda s: None)
    assert manager.upload(ipa, credentials, APP_ID).strategy == "pilot"
    assert altool.calls == 1


def test_all_strategies_failing_raises_with_last_error(ipa, credentials, audit) -> None:
    strategies = [FakeStrategy(name, failures=10) for name in ("altool", "transporter", "pilot")]
    manager = UploadManager(strategies, audit, sleep=lambda s: None)

    with pytest.raises(UploadFailedError) as excinfo:
        manager.upload(ipa, credentials, APP_ID)

    assert "pilot" in str(excinfo.value.last_error)
    assert len(audit.events("UPLOAD_ATTEMPT")) == 6
    assert len(audit.events("UPLOAD_FAILED")) == 1


def test_preferred_strategy_goes_first(ipa, credentials, audit, env) -> None:
    env.set(PREFERRED_STRATEGY_KEY, "transporter")
    altool, transporter = FakeStrategy("altool"), FakeStrategy("transporter")
    manager = UploadManager([altool, transporter], audit, env=env)
    assert [s.name for s in manager.ordered_strategies()] == ["transporter", "altool"]
    assert manager.upload(ipa, credentials, APP_ID).strategy == "transporter"
    assert altool.calls == 0


def test_invalid_ipa_is_rejected_before_any_upload(tmp_path, credentials, audit) -> None:
    wrong = write_ipa(tmp_path / "Other.ipa", bundle_id="com.other.app")
    altool = FakeStrategy("altool")
    manager = UploadManager([altool], audit)
    with pytest.raises(InvalidIpaError):
        manager.upload(wrong, credentials, APP_ID)
    assert altool.calls == 0
    assert audit.entries() == []


def test_default_strategy_order() -> None:
    assert [s.name for s in default_strategies()] == ["altool", "transporter", "pilot"]
    assert [s.name for s in default_strategies(["pilot", "altool"])] == ["pilot", "altool"]
    with pytest.raises(ValueError):
        default_strategies(["carrier-pigeon"])


def fake_run(returncode=0, stdout="", stderr="", error=None, calls=None):
    def run(cmd, **kwargs):
        if calls is not None:
            calls.append((cmd, kwargs))
        if error is not None:
            raise error
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)

    return run


def test_altool_command_and_environment(ipa, credentials) -> None:
    calls = []
    AltoolStrategy(runner=fake_run(calls=calls)).upload(ipa, credentials, 60)
    cmd, kwargs = calls[0]
    assert cmd[:3] == ["xcrun", "altool", "--upload-app"]
    assert cmd[cmd.index("--apiKey") + 1] == "KEY1234567"
    assert kwargs["timeout"] == 60
    assert kwargs["env"]["API_PRIVATE_KEYS_DIR"] == str(credentials.api_key_path.parent)


def test_transporter_error_output_is_a_failure(ipa, credentials) -> None:
    strategy = TransporterStrategy(runner=fake_run(stdout="ERROR ITMS-90062: bundle version must be higher"))
    with pytest.raises(UploadStrategyError) as excinfo:
        strategy.upload(ipa, credentials, 60)
    assert excinfo.value.retryable


def test_authentication_failures_are_not_retryable(ipa, credentials) -> None:
    strategy = AltoolStrategy(runner=fake_run(returncode=1, stderr="Error: 401 Unauthorized"))
    with pytest.raises(UploadStrategyError) as excinfo:
        strategy.upload(ipa, credentials, 60)
    assert not excinfo.value.retryable


def test_missing_tool_and_timeout(ipa, credentials) -> None:
    missing = PilotStrategy(runner=fake_run(error=FileNotFoundError("fastlane")))
    with pytest.raises(UploadStrategyError) as excinfo:
        missing.upload(ipa, credentials, 60)
    assert not excinfo.value.retryable

    slow = AltoolStrategy(runner=fake_run(error=subprocess.TimeoutExpired("xcrun", 60)))
    with pytest.raises(UploadStrategyError) as excinfo:
        slow.upload(ipa, credentials, 60)
    assert excinfo.value.retryable


def test_pilot_skips_waiting_for_processing(ipa, credentials) -> None:
    calls = []
    PilotStrategy(runner=fake_run(calls=calls)).upload(ipa, credentials, 60)
    cmd, _ = calls[0]
    assert cmd[:3] == ["fastlane", "pilot", "upload"]
    assert "--skip_waiting_for_build_processing" in cmd

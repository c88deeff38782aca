from tenantcron.services.kill_switch import KillSwitchSnapshot, kill_switch_env_key


def test_env_key_format():
    assert kill_switch_env_key("review-sync") == "STOP_REVIEW_SYNC_CRON"
    assert kill_switch_env_key("vaio") == "STOP_VAIO_CRON"
    assert kill_switch_env_key("citation-intelligence") == "STOP_CITATION_INTELLIGENCE_CRON"


def test_only_exact_true_halts():
    env = {
        "STOP_NAP_SYNC_CRON": "true",
        "STOP_REVIEW_SYNC_CRON": "TRUE",
        "STOP_VAIO_CRON": "1",
        "STOP_SCHEMA_DRIFT_CRON": " true",
    }
    snapshot = KillSwitchSnapshot.from_env(
        ["nap-sync", "review-sync", "vaio", "schema-drift", "authority-mapping"], environ=env
    )

    assert snapshot.is_halted("nap-sync") is True
    assert snapshot.is_halted("review-sync") is False
    assert snapshot.is_halted("vaio") is False
    assert snapshot.is_halted("schema-drift") is False
    assert snapshot.is_halted("authority-mapping") is False
    assert snapshot.halted_jobs() == ["nap-sync"]


def test_snapshot_does_not_follow_later_env_changes(monkeypatch):
    monkeypatch.setenv("STOP_NAP_SYNC_CRON", "true")
    snapshot = KillSwitchSnapshot.from_env(["nap-sync"])
    monkeypatch.setenv("STOP_NAP_SYNC_CRON", "false")

    assert snapshot.is_halted("nap-sync") is True
    assert KillSwitchSnapshot.from_env(["nap-sync"]).is_halted("nap-sync") is False


def test_unknown_job_is_not_halted():
    assert KillSwitchSnapshot.from_env([], environ={}).is_halted("nap-sync") is False


def test_explicit_env_keys_override_the_derived_ones():
    snapshot = KillSwitchSnapshot.from_env(
        {"citation-intelligence": "STOP_CITATION_CRON"},
        environ={"STOP_CITATION_CRON": "true", "STOP_CITATION_INTELLIGENCE_CRON": "true"},
    )

    assert snapshot.is_halted("citation-intelligence") is True
    assert KillSwitchSnapshot.from_env(
        {"citation-intelligence": "STOP_CITATION_CRON"},
        environ={"STOP_CITATION_INTELLIGENCE_CRON": "true"},
    ).is_halted("citation-intelligence") is False

from __future__ import annotations

import json

import pytest

from clear_terms.analysis.provider import AnalysisProvider, ProviderFailure, ProviderReply
from clear_terms.bootstrap import build_service
from clear_terms.core.config import Settings
from clear_terms.core.subjects import subject_hash
from clear_terms.jobs.models import FailureKind, JobStatus
from clear_terms.service import InvalidSubmission, ReportNotFound

URL = "https://example.com/terms"
OWNER = "8f2a91c0-119b-4c8e-9d7f-0a1b2c3d4e5f"
CONTENT = "By using this service you agree to the following terms. " * 10


class StubProvider(AnalysisProvider):
    def __init__(self) -> None:
        self.calls = 0
        self.fail = False

    def analyze(self, prompt, models, api_key):
        self.calls += 1
        if self.fail:
            raise ProviderFailure("All models failed. Last error: timeout")
        report = {"site_name": "Example", "summary": "ok", "categories": {"a": {"status": "green"}}}
        return ProviderReply(text=json.dumps(report), model=models[0])


@pytest.fixture()
def provider():
    return StubProvider()


@pytest.fixture()
def service(ledger, provider):
    settings = Settings(environment="test", gemini_api_key="k", prompt_template_path=None)
    svc = build_service(settings, provider=provider, ledger=ledger)
    yield svc
    svc.shutdown()


def test_submit_runs_job_and_reports_remaining_credits(service, provider):
    job_id = service.submit_job(URL, CONTENT, "en", OWNER)

    view = service.get_job(job_id)
    assert view.status == JobStatus.DONE
    assert view.result["site_name"] == "Example"
    assert view.error is None
    assert view.remaining_credits == 19
    assert provider.calls == 1


def test_submit_creates_account_on_first_contact(service, ledger):
    assert ledger.get_account(OWNER) is None
    service.submit_job(URL, CONTENT, "en", OWNER)
    record = ledger.get_account(OWNER)
    assert record is not None
    assert record.support_key == "CT-8F2A-119B"


def test_failed_job_reports_error_and_refunded_balance(service, provider):
    provider.fail = True
    job_id = service.submit_job(URL, CONTENT, "en", OWNER)

    view = service.get_job(job_id)
    assert view.status == JobStatus.ERROR
    assert view.result is None
    assert view.failure_kind == FailureKind.PROVIDER_FAILURE
    assert view.remaining_credits == 20


def test_unknown_job_is_none(service):
    assert service.get_job("nope") is None


@pytest.mark.parametrize(
    ("url", "content"),
    [
        (URL, ""),
        (URL, "too short"),
        (URL, "x" * 500_001),
        ("ftp://example.com/terms", CONTENT),
        ("not a url", CONTENT),
    ],
)
def test_submit_rejects_invalid_input(service, url, content):
    with pytest.raises(InvalidSubmission):
        service.submit_job(url, content, "en", OWNER)
    assert len(service.jobs) == 0


def test_submit_requires_owner(service):
    with pytest.raises(InvalidSubmission):
        service.submit_job(URL, CONTENT, "en", "")


def test_blank_url_and_unknown_language_fall_back(service):
    job_id = service.submit_job("  ", CONTENT, "de", OWNER)

    job = service.jobs.get(job_id)
    assert job.subject_reference == "unknown"
    assert job.language == "en"


def test_internal_urls_blocked_in_production(ledger, provider):
    settings = Settings(environment="production", run_jobs_eagerly=True, gemini_api_key="k")
    svc = build_service(settings, provider=provider, ledger=ledger)
    try:
        with pytest.raises(InvalidSubmission, match="Internal"):
            svc.submit_job("http://192.168.1.10/terms", CONTENT, "en", OWNER)
        with pytest.raises(InvalidSubmission):
            svc.submit_job("http://localhost/terms", CONTENT, "en", OWNER)
    finally:
        svc.shutdown()


def test_lookup_cached_report(service):
    service.submit_job(URL, CONTENT, "en", OWNER)
    url_hash = subject_hash(URL)

    report = service.lookup_cached_report(url_hash, "en")
    assert report["site_name"] == "Example"
    assert report["metadata"]["source"] == "ai"

    with pytest.raises(ReportNotFound) as exc:
        service.lookup_cached_report(url_hash, "fr")
    assert exc.value.available_languages == ["en"]

    with pytest.raises(ReportNotFound) as exc:
        service.lookup_cached_report("ab" * 32, "en")
    assert exc.value.available_languages == []


def test_lookup_cached_report_is_free(service, ledger):
    service.submit_job(URL, CONTENT, "en", OWNER)
    before = ledger.get_account(OWNER).balance
    service.lookup_cached_report(subject_hash(URL), "en")
    assert ledger.get_account(OWNER).balance == before


@pytest.mark.parametrize("bad", ["", "not-a-hash", "../../etc/passwd"])
def test_lookup_rejects_malformed_hash(service, bad):
    with pytest.raises(ValueError):
        service.lookup_cached_report(bad, "en")


def test_stats(service):
    service.submit_job(URL, CONTENT, "en", OWNER)

    stats = service.get_stats()

    assert stats["status"] == "ok"
    assert stats["jobs"]["total"] == 1
    assert stats["jobs"]["statuses"]["done"] == 1
    assert stats["cache_size"] == 1
    assert "timestamp" in stats


def test_start_registers_sweep_jobs(service):
    service.start()
    job_ids = {job.id for job in service._scheduler.get_jobs()}
    assert job_ids == {"sweep-jobs", "sweep-cache"}


def test_stats_include_ledger_totals(service):
    service.submit_job(URL, CONTENT, "en", OWNER)

    stats = service.get_stats()

    assert stats["ledger"] == {"total_users": 1, "total_usage": 1, "total_balance": 19}


def test_stats_degrade_when_ledger_unavailable(service, monkeypatch):
    from clear_terms.ledger.store import StoreUnavailable

    def unavailable():
        raise StoreUnavailable("ledger offline")

    monkeypatch.setattr(service.ledger, "stats", unavailable)

    stats = service.get_stats()

    assert stats["status"] == "degraded"
    assert stats["ledger"] is None
    assert stats["jobs"]["total"] == 0


def test_check_health_reports_ledger_backend(service, monkeypatch, tmp_path):
    from clear_terms.core.config import settings

    monkeypatch.setattr(settings, "ledger_backend", "local")
    monkeypatch.setattr(settings, "ledger_path", tmp_path / "health" / "users.json")

    health = service.check_health()

    assert health["status"] == "ok"
    assert health["ledger_store"]["backend"] == "local"
    assert health["ledger_store"]["records"] == 0


def test_check_health_degraded_without_backend_credentials(service, monkeypatch):
    from clear_terms.core.config import settings

    monkeypatch.setattr(settings, "ledger_backend", "s3")
    monkeypatch.setattr(settings, "s3_access_key_id", None)

    health = service.check_health()

    assert health["status"] == "degraded"
    assert health["ledger_store"]["error"] == "missing_s3_credentials"

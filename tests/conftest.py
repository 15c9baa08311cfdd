from __future__ import annotations

import os
import sys

import pytest

# Settings are read at import time, so this must run before the package is imported.
os.environ.setdefault("POSTHOG_DISABLED", "true")
os.environ.setdefault("JOB_VERIFY_ENV", "dev")

sys.path.insert(0, os.path.abspath("."))
sys.path.insert(0, os.path.dirname(__file__))


@pytest.fixture(autouse=True)
def _reset_process_singletons():
    from job_verify_application.services import job_store, rate_limiter, resilient_client

    yield

    rate_limiter._set_rate_limiter_for_tests(None)
    resilient_client._set_client_for_tests(None)
    job_store._set_job_store_for_tests(None)

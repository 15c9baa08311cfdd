from .classifier import (
    DEFAULT_GENERIC_PAGE_RULES,
    GenericPageRule,
    ProbeOutcome,
    build_generic_page_rules,
    classify,
    match_generic_page,
)
from .orchestrator import VerifyOptions, filter_by_company, verify_candidate, verify_candidates
from .probe import UrlProber, browser_headers

__all__ = [
    "DEFAULT_GENERIC_PAGE_RULES",
    "GenericPageRule",
    "ProbeOutcome",
    "UrlProber",
    "VerifyOptions",
    "browser_headers",
    "build_generic_page_rules",
    "classify",
    "filter_by_company",
    "match_generic_page",
    "verify_candidate",
    "verify_candidates",
]

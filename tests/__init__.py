# zauth Test Suite
"""
Test suite including:
- Unit tests per component
- Integration tests (login flow, audit trail)
- Security tests (enumeration, forged cookies, stale codes)

Run with: pytest
Coverage: coverage run -m pytest && coverage report
"""

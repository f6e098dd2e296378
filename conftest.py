def pytest_addoption(parser):
    """Register the harvest script's CLI options so `pytest scripts/harvest_e2e.py --product x` won't fail.

    This makes pytest accept the script's command-line flags (best-effort). It does not execute the script's main
    automatically.
    """

    # Helper to safely add options without causing conflicts if already registered
    def safe_addoption(*args, **kwargs):
        try:
            parser.addoption(*args, **kwargs)
        except ValueError:
            # Option already registered, skip
            pass

    safe_addoption("--product", action="append", help="Product slug (script flag)")
    safe_addoption("--quota", action="store", help="Review quota (script flag)")
    safe_addoption("--strategy", action="store", help="Strategy (script flag)")
    safe_addoption("--proxy", action="append", help="Proxy URL (script flag)")
    safe_addoption("--concurrency", action="store", help="Concurrency (script flag)")
    safe_addoption("--output", action="store", help="Output file (script flag)")
    # Note: do NOT register `--verbose` here because pytest already defines it.

# tests/conftest.py
import os
import sys

# Ensure repository root is on PYTHONPATH for tests
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

# Placeholder secrets and fast retries for the test run
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("CLOUD_RETRY_BASE_DELAY_MS", "0")
os.environ.setdefault("LOCAL_RETRY_BASE_DELAY_MS", "0")
os.environ.setdefault("TRANSPORT_BACKEND", "standard")

import sys
from pathlib import Path

import pytest

# Add project root to Python path
_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

from copilot_proxy.core.config import Settings
from copilot_proxy.services.metrics import MetricsRegistry

SERVICE_TOKEN = "test-service-token"


@pytest.fixture
def settings():
    return Settings(
        upstream_api_key="nebius-test-key",
        service_token=SERVICE_TOKEN,
        proxy_host="proxy.corp.local",
        proxy_port=3128,
        proxy_user="alice",
        proxy_pass="wonderland",
    )


@pytest.fixture
def metrics():
    return MetricsRegistry(default_collectors=False)


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {SERVICE_TOKEN}", "Content-Type": "application/json"}

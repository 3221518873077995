"""BDD tests for end-to-end anomaly detection."""

import pytest
from pytest_bdd import scenarios

scenarios("end_to_end.feature")

# End-to-end: ingestion, windowing, detection and dispatch together
pytestmark = pytest.mark.tier(3)

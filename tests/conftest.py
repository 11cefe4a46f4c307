"""
Shared pytest fixtures for the audit job tests.

The PowerBI client is replaced by a Mock so no test touches the network.
"""

from unittest.mock import Mock

import pytest

from audit_log import AuditLog
from powerbi_client import PowerBIClient


@pytest.fixture
def audit_log(tmp_path):
    """AuditLog writing into the test's temporary directory."""
    log = AuditLog.for_job("test", str(tmp_path / "logs"))
    yield log
    log.close()


@pytest.fixture
def mock_client():
    """Mock PowerBIClient; every listing returns nothing unless a test says otherwise."""
    client = Mock(spec=PowerBIClient)
    client.get_workspaces.return_value = []
    client.get_reports.return_value = []
    client.get_datasets.return_value = []
    client.get_dataflows.return_value = []
    client.get_dataset_datasources.return_value = []
    client.get_dataflow_datasources.return_value = []
    client.execute_queries.return_value = []
    return client

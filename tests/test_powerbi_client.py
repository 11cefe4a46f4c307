"""
Unit tests for PowerBIClient.

requests and azure-identity are mocked to avoid network calls.
"""

from unittest.mock import Mock, patch

import pytest
import requests

from powerbi_client import MetadataQueryError, PowerBIAPIError, PowerBIClient


def make_response(status_code=200, payload=None, headers=None):
    response = Mock()
    response.status_code = status_code
    response.headers = headers or {}
    response.content = b'{}' if payload is not None else b''
    response.json.return_value = payload if payload is not None else {}
    response.text = str(payload)
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status_code} Client Error")
    else:
        response.raise_for_status.return_value = None
    return response


@pytest.fixture
def client():
    client = PowerBIClient(tenant_id="tenant", client_id="app", client_secret="secret")
    client.access_token = "token"
    return client


# =============================================================================
# Test: authenticate
# =============================================================================


def test_authenticate_with_service_principal():
    client = PowerBIClient(tenant_id="tenant", client_id="app", client_secret="secret")
    with patch("powerbi_client.ClientSecretCredential") as mock_credential:
        mock_credential.return_value.get_token.return_value = Mock(token="abc")
        assert client.authenticate() == "abc"

    mock_credential.assert_called_once_with(tenant_id="tenant", client_id="app", client_secret="secret")
    assert client.access_token == "abc"


def test_authenticate_interactive_defaults_client_id():
    client = PowerBIClient(tenant_id="tenant", use_service_principal=False)
    with patch("powerbi_client.InteractiveBrowserCredential") as mock_credential:
        mock_credential.return_value.get_token.return_value = Mock(token="xyz")
        client.authenticate()

    _, kwargs = mock_credential.call_args
    assert kwargs["client_id"] == "04b07795-8ddb-461a-bbee-02f9e1bf7b46"


# =============================================================================
# Test: _make_request
# =============================================================================


def test_listing_follows_next_link(client):
    pages = [
        make_response(payload={"value": [{"id": "w1"}], "@odata.nextLink": "https://next"}),
        make_response(payload={"value": [{"id": "w2"}]}),
    ]
    with patch("powerbi_client.requests.request", side_effect=pages) as mock_request:
        workspaces = client.get_workspaces()

    assert [w["id"] for w in workspaces] == ["w1", "w2"]
    assert mock_request.call_args_list[1].args[1] == "https://next"


def test_rate_limited_request_is_retried(client):
    responses = [
        make_response(status_code=429, headers={"Retry-After": "2"}),
        make_response(payload={"value": []}),
    ]
    with patch("powerbi_client.requests.request", side_effect=responses), \
            patch("powerbi_client.time.sleep") as mock_sleep:
        assert client.get_reports("w1") == []

    mock_sleep.assert_called_once_with(2)


def test_http_error_raises_api_error(client):
    with patch("powerbi_client.requests.request", return_value=make_response(status_code=403)):
        with pytest.raises(PowerBIAPIError) as exc_info:
            client.get_reports("w1")

    assert exc_info.value.status_code == 403
    assert "groups/w1/reports" in exc_info.value.url


def test_connection_error_raises_api_error(client):
    with patch("powerbi_client.requests.request",
               side_effect=requests.exceptions.ConnectionError("boom")):
        with pytest.raises(PowerBIAPIError):
            client.get_datasets("w1")


# =============================================================================
# Test: execute_queries
# =============================================================================


def test_execute_queries_sends_impersonation_and_returns_rows(client):
    payload = {"results": [{"tables": [{"rows": [{"[Name]": "Sales", "[QueryDefinition]": "SELECT 1"}]}]}]}
    with patch("powerbi_client.requests.request", return_value=make_response(payload=payload)) as mock_request:
        rows = client.execute_queries("w1", "d1", "EVALUATE X", impersonated_user="ops@contoso.com")

    assert rows == [{"[Name]": "Sales", "[QueryDefinition]": "SELECT 1"}]
    method, url = mock_request.call_args.args
    body = mock_request.call_args.kwargs["json"]
    assert method == "POST"
    assert url.endswith("/groups/w1/datasets/d1/executeQueries")
    assert body["impersonatedUserName"] == "ops@contoso.com"
    assert body["serializerSettings"] == {"includeNulls": True}
    assert body["queries"] == [{"query": "EVALUATE X"}]


def test_execute_queries_error_payload_raises(client):
    payload = {"results": [{"error": {"code": "DatasetExecuteQueriesError"}}]}
    with patch("powerbi_client.requests.request", return_value=make_response(payload=payload)):
        with pytest.raises(MetadataQueryError):
            client.execute_queries("w1", "d1", "EVALUATE X")


# =============================================================================
# Test: workspace access grants
# =============================================================================


def test_add_and_delete_workspace_user(client):
    with patch("powerbi_client.requests.request", return_value=make_response()) as mock_request:
        client.add_workspace_user("w1", "ops@contoso.com")
        client.delete_workspace_user("w1", "ops@contoso.com")

    grant, revoke = mock_request.call_args_list
    assert grant.args[0] == "POST"
    assert grant.args[1].endswith("/admin/groups/w1/users")
    assert grant.kwargs["json"] == {"emailAddress": "ops@contoso.com", "groupUserAccessRight": "Admin"}
    assert revoke.args[0] == "DELETE"
    assert revoke.args[1].endswith("/admin/groups/w1/users/ops%40contoso.com")


def test_dataflow_datasources_use_organization_scope(client):
    with patch("powerbi_client.requests.request",
               return_value=make_response(payload={"value": [{"datasourceType": "Sql"}]})) as mock_request:
        assert client.get_dataflow_datasources("w1", "f1") == [{"datasourceType": "Sql"}]

    assert mock_request.call_args.args[1] == "https://api.powerbi.com/v1.0/myorg/admin/dataflows/f1/datasources"

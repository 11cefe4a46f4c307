#!/usr/bin/env python3
"""
PowerBI Tenant Client
Authenticated access to the PowerBI REST API used by the tenant audit jobs:
organization-scope listings, dataset metadata queries and workspace access grants.
"""

import time
import logging
from datetime import datetime
from typing import Dict, List, Optional, Any
from urllib.parse import quote

import requests
from azure.identity import ClientSecretCredential, InteractiveBrowserCredential

POWERBI_SCOPE = "https://analysis.windows.net/powerbi/api/.default"
POWERBI_CLI_CLIENT_ID = "04b07795-8ddb-461a-bbee-02f9e1bf7b46"


class PowerBIAPIError(Exception):
    """Raised when a PowerBI REST call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class MetadataQueryError(PowerBIAPIError):
    """Raised when executeQueries answers with an error payload instead of rows."""


class PowerBIClient:
    def __init__(self, tenant_id: str, client_id: str = None, client_secret: str = None,
                 use_service_principal: bool = True, max_requests_per_hour: int = 500):
        """
        Initialize PowerBI client

        Args:
            tenant_id: Azure AD Tenant ID
            client_id: Application (client) ID for service principal
            client_secret: Client secret for service principal
            use_service_principal: If True, use service principal auth, else interactive
            max_requests_per_hour: Request budget before the client pauses
        """
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.use_service_principal = use_service_principal
        self.base_url = "https://api.powerbi.com/v1.0/myorg"
        self.admin_url = "https://api.powerbi.com/v1.0/myorg/admin"
        self.access_token = None
        self.logger = logging.getLogger(__name__)

        # Rate limiting
        self.max_requests_per_hour = max_requests_per_hour
        self.request_count = 0
        self.start_time = datetime.now()

    def authenticate(self) -> str:
        """
        Authenticate and get access token. The token is held for the whole run.

        Returns:
            Access token string
        """
        try:
            if self.use_service_principal and self.client_id and self.client_secret:
                self.logger.info("Authenticating with service principal...")
                credential = ClientSecretCredential(
                    tenant_id=self.tenant_id,
                    client_id=self.client_id,
                    client_secret=self.client_secret
                )
            else:
                self.logger.info("Authenticating with interactive browser...")
                credential = InteractiveBrowserCredential(
                    tenant_id=self.tenant_id,
                    client_id=self.client_id if self.client_id else POWERBI_CLI_CLIENT_ID
                )

            token = credential.get_token(POWERBI_SCOPE)
            self.access_token = token.token
            self.logger.info("Authentication successful")
            return self.access_token

        except Exception as e:
            self.logger.error(f"Authentication failed: {str(e)}")
            raise

    def _throttle(self):
        elapsed_hours = (datetime.now() - self.start_time).total_seconds() / 3600
        if elapsed_hours >= 1:
            self.request_count = 0
            self.start_time = datetime.now()

        if self.request_count >= self.max_requests_per_hour:
            self.logger.warning("Rate limit reached, waiting 1 hour...")
            time.sleep(3600)
            self.request_count = 0
            self.start_time = datetime.now()

    def _make_request(self, url: str, method: str = 'GET', data: Dict = None) -> Dict:
        """
        Make authenticated API request with rate limiting

        Args:
            url: API endpoint URL
            method: HTTP method (GET, POST, DELETE)
            data: Request payload for POST requests

        Returns:
            JSON response (empty dict for bodiless responses)

        Raises:
            PowerBIAPIError: on connection errors and non-2xx responses
        """
        self._throttle()

        headers = {
            'Authorization': f'Bearer {self.access_token}',
            'Content-Type': 'application/json'
        }

        try:
            response = requests.request(method.upper(), url, headers=headers, json=data)
        except requests.exceptions.RequestException as e:
            self.logger.error(f"API request failed: {url} - {str(e)}")
            raise PowerBIAPIError(str(e), url=url) from e

        self.request_count += 1

        if response.status_code == 429:  # Too Many Requests
            retry_after = int(response.headers.get('Retry-After', 60))
            self.logger.warning(f"Rate limited, waiting {retry_after} seconds...")
            time.sleep(retry_after)
            return self._make_request(url, method, data)

        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            self.logger.error(f"API request failed: {url} - {str(e)}")
            raise PowerBIAPIError(f"{e} - {response.text[:500]}", status_code=response.status_code, url=url) from e

        return response.json() if response.content else {}

    def _get_all_pages(self, url: str) -> List[Dict]:
        """Follow @odata.nextLink until the listing is exhausted."""
        items = []
        while url:
            response = self._make_request(url)
            items.extend(response.get('value', []))
            url = response.get('@odata.nextLink')
        return items

    def get_workspaces(self, top: int = 5000) -> List[Dict]:
        """
        Get all workspaces in the organization (admin API)

        Args:
            top: Page size requested from the admin endpoint

        Returns:
            List of workspace dictionaries
        """
        self.logger.info("Getting all workspaces...")
        workspaces = self._get_all_pages(f"{self.admin_url}/groups?$top={top}")
        self.logger.info(f"Found {len(workspaces)} workspaces")
        return workspaces

    def get_reports(self, workspace_id: str) -> List[Dict]:
        """Get reports for a specific workspace"""
        return self._get_all_pages(f"{self.admin_url}/groups/{workspace_id}/reports")

    def get_datasets(self, workspace_id: str) -> List[Dict]:
        """Get datasets for a specific workspace"""
        return self._get_all_pages(f"{self.admin_url}/groups/{workspace_id}/datasets")

    def get_dataflows(self, workspace_id: str) -> List[Dict]:
        """Get dataflows for a specific workspace"""
        return self._get_all_pages(f"{self.admin_url}/groups/{workspace_id}/dataflows")

    def get_dataset_datasources(self, dataset_id: str) -> List[Dict]:
        """Get data sources a dataset connects to"""
        return self._get_all_pages(f"{self.admin_url}/datasets/{dataset_id}/datasources")

    def get_dataflow_datasources(self, workspace_id: str, dataflow_id: str) -> List[Dict]:
        """Get data sources a dataflow connects to"""
        return self._get_all_pages(f"{self.admin_url}/dataflows/{dataflow_id}/datasources")

    def execute_queries(self, workspace_id: str, dataset_id: str, query: str,
                        impersonated_user: Optional[str] = None, include_nulls: bool = True) -> List[Dict]:
        """
        Run a DAX query against a dataset

        Args:
            workspace_id: Workspace holding the dataset
            dataset_id: Dataset to query
            query: DAX query text
            impersonated_user: UPN whose effective permissions the query runs under
            include_nulls: Keep null-valued columns in the returned rows

        Returns:
            Rows of the first result table

        Raises:
            MetadataQueryError: when the service returns an error payload
            PowerBIAPIError: when the request itself fails
        """
        url = f"{self.base_url}/groups/{workspace_id}/datasets/{dataset_id}/executeQueries"
        payload: Dict[str, Any] = {
            "queries": [{"query": query}],
            "serializerSettings": {"includeNulls": include_nulls}
        }
        if impersonated_user:
            payload["impersonatedUserName"] = impersonated_user

        response = self._make_request(url, 'POST', payload)

        if 'error' in response:
            raise MetadataQueryError(str(response['error']), url=url)

        rows = []
        for result in response.get('results', []):
            if 'error' in result:
                raise MetadataQueryError(str(result['error']), url=url)
            for table in result.get('tables', []):
                rows.extend(table.get('rows', []))
        return rows

    def add_workspace_user(self, workspace_id: str, email_address: str, access_right: str = 'Admin') -> None:
        """
        Grant a user access to a workspace (admin API)

        Args:
            workspace_id: Workspace to grant access on
            email_address: User principal name
            access_right: Workspace role to grant
        """
        url = f"{self.admin_url}/groups/{workspace_id}/users"
        self.logger.info(f"Granting {access_right} on workspace {workspace_id} to {email_address}")
        self._make_request(url, 'POST', {
            "emailAddress": email_address,
            "groupUserAccessRight": access_right
        })

    def delete_workspace_user(self, workspace_id: str, email_address: str) -> None:
        """Remove a user's access from a workspace (admin API)"""
        url = f"{self.admin_url}/groups/{workspace_id}/users/{quote(email_address)}"
        self.logger.info(f"Revoking access on workspace {workspace_id} for {email_address}")
        self._make_request(url, 'DELETE')

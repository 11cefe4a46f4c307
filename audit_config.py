"""
PowerBI Tenant Audit Configuration
Defaults below are overridden by environment variables, which are overridden by CLI flags.
"""

import os
from typing import List

# Your Azure AD Tenant ID
TENANT_ID = "YOUR_TENANT_ID"

# Authentication Settings
USE_SERVICE_PRINCIPAL = False  # Set to True for automated runs
CLIENT_ID = None               # Falls back to the PowerBI CLI public client for interactive auth
CLIENT_SECRET = None

# Identity impersonated by metadata queries and granted temporary workspace Admin
OPERATOR_UPN = None

# Substring of the recorded connection details selecting datasets to crawl
CONNECTION_FILTER = "yourdatawarehouse"

# Output Settings
OUTPUT_DIR = "output"
TOPOLOGY_PREFIX = "powerbi_topology"
CREATE_EXCEL = True
MAX_REQUESTS_PER_HOUR = 500


def _env_flag(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() == 'true'


class AuditConfig:
    def __init__(self, tenant_id: str = TENANT_ID, client_id: str = CLIENT_ID, client_secret: str = CLIENT_SECRET,
                 use_service_principal: bool = USE_SERVICE_PRINCIPAL, operator_upn: str = OPERATOR_UPN,
                 connection_filter: str = CONNECTION_FILTER, output_dir: str = OUTPUT_DIR,
                 create_excel: bool = CREATE_EXCEL, max_requests_per_hour: int = MAX_REQUESTS_PER_HOUR):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.use_service_principal = use_service_principal
        self.operator_upn = operator_upn
        self.connection_filter = connection_filter
        self.output_dir = output_dir
        self.create_excel = create_excel
        self.max_requests_per_hour = max_requests_per_hour

    @classmethod
    def from_env(cls) -> "AuditConfig":
        return cls(
            tenant_id=os.getenv('AZURE_TENANT_ID', TENANT_ID),
            client_id=os.getenv('AZURE_CLIENT_ID', CLIENT_ID),
            client_secret=os.getenv('AZURE_CLIENT_SECRET', CLIENT_SECRET),
            use_service_principal=_env_flag('USE_SERVICE_PRINCIPAL', USE_SERVICE_PRINCIPAL),
            operator_upn=os.getenv('PBI_OPERATOR_UPN', OPERATOR_UPN),
            connection_filter=os.getenv('PBI_CONNECTION_FILTER', CONNECTION_FILTER),
            output_dir=os.getenv('PBI_OUTPUT_DIR', OUTPUT_DIR),
            create_excel=_env_flag('PBI_CREATE_EXCEL', CREATE_EXCEL),
            max_requests_per_hour=int(os.getenv('PBI_MAX_REQUESTS_PER_HOUR', MAX_REQUESTS_PER_HOUR)),
        )

    def missing_settings(self, need_operator: bool = False) -> List[str]:
        missing = []
        if not self.tenant_id or self.tenant_id == TENANT_ID:
            missing.append('AZURE_TENANT_ID')
        if self.use_service_principal:
            if not self.client_id:
                missing.append('AZURE_CLIENT_ID')
            if not self.client_secret:
                missing.append('AZURE_CLIENT_SECRET')
        if need_operator and not self.operator_upn:
            missing.append('PBI_OPERATOR_UPN')
        if need_operator and not self.connection_filter:
            missing.append('PBI_CONNECTION_FILTER')
        return missing

    def validate(self, need_operator: bool = False) -> None:
        """Raise ValueError naming every required setting that is not configured."""
        missing = self.missing_settings(need_operator)
        if missing:
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")

    def path(self, filename: str) -> str:
        return os.path.join(self.output_dir, filename)

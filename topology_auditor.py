#!/usr/bin/env python3
"""
PowerBI Topology Auditor
Walks every workspace in the tenant and records which data sources feed each
report (through its dataset) and each dataflow.
"""

import os
import json
import logging
from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd

from audit_log import AuditLog
from powerbi_client import PowerBIClient

NO_DATA_SOURCE = {'name': 'No Data Source', 'type': 'None'}

COLUMN_ORDER = [
    'WorkspaceName', 'WorkspaceId', 'ReportName', 'DatasetName', 'DatasetId',
    'DataflowName', 'DataSource', 'DataSourceType', 'ConnectionDetails'
]


def describe_datasource(datasource: Dict) -> Dict[str, str]:
    """
    Flatten a datasource payload into name/type/connection details

    Args:
        datasource: Datasource dictionary from the PowerBI API

    Returns:
        Dictionary with 'name', 'type' and 'connectionDetails' (JSON text)
    """
    details = datasource.get('connectionDetails') or {}
    if isinstance(details, str):
        connection_text = details
        details = {}
    else:
        connection_text = json.dumps(details, sort_keys=True) if details else ''

    name = datasource.get('name') or datasource.get('datasourceName')
    if not name:
        parts = [details.get(key) for key in ('server', 'database', 'url', 'path', 'kind') if details.get(key)]
        name = '/'.join(parts) if parts else datasource.get('datasourceId', '')

    return {
        'name': name,
        'type': datasource.get('datasourceType', ''),
        'connectionDetails': connection_text or datasource.get('connectionString', '')
    }


def datasources_or_placeholder(datasources: List[Dict]) -> List[Dict[str, str]]:
    """Describe each datasource, substituting the 'No Data Source' row when there are none."""
    if not datasources:
        return [dict(NO_DATA_SOURCE, connectionDetails='')]
    return [describe_datasource(ds) for ds in datasources]


def find_dataset(datasets: List[Dict], dataset_id: Optional[str]) -> Optional[Dict]:
    for dataset in datasets:
        if dataset.get('id') == dataset_id:
            return dataset
    return None


class TopologyAuditor:
    def __init__(self, client: PowerBIClient, audit_log: AuditLog):
        """
        Args:
            client: Authenticated PowerBI client
            audit_log: Error log pair for this job
        """
        self.client = client
        self.audit_log = audit_log
        self.logger = logging.getLogger(__name__)
        self.skipped_workspaces: List[str] = []

    def audit(self) -> List[Dict]:
        """
        Audit every workspace visible at organization scope.

        Only the per-workspace report listing is guarded; any other API failure
        propagates and ends the run.

        Returns:
            List of audit rows (dicts keyed by COLUMN_ORDER entries)
        """
        rows: List[Dict] = []
        workspaces = self.client.get_workspaces()

        for i, workspace in enumerate(workspaces, 1):
            ws_id = workspace.get('id')
            ws_name = workspace.get('name') or 'Unknown'
            print(f"   Scanning {i:3d}/{len(workspaces)}: {ws_name[:40]:<40}")

            try:
                reports = self.client.get_reports(ws_id)
            except Exception as e:
                self.audit_log.record("Failed to list reports, skipping workspace", e,
                                      workspace_id=ws_id, workspace_name=ws_name)
                self.skipped_workspaces.append(ws_id)
                continue

            rows.extend(self.audit_reports(workspace, reports))
            rows.extend(self.audit_dataflows(workspace))

        self.logger.info(f"Topology audit complete: {len(rows)} rows from {len(workspaces)} workspaces "
                         f"({len(self.skipped_workspaces)} skipped)")
        return rows

    def audit_reports(self, workspace: Dict, reports: List[Dict]) -> List[Dict]:
        ws_id = workspace.get('id')
        ws_name = workspace.get('name') or ''
        rows = []
        if not reports:
            return rows

        datasets = self.client.get_datasets(ws_id)

        for report in reports:
            dataset = find_dataset(datasets, report.get('datasetId'))
            if dataset is None:
                self.logger.info(f"Report '{report.get('name')}' in workspace '{ws_name}' "
                                 f"has no matching dataset ({report.get('datasetId')})")
                continue

            datasources = self.client.get_dataset_datasources(dataset.get('id'))
            for source in datasources_or_placeholder(datasources):
                rows.append({
                    'WorkspaceName': ws_name,
                    'WorkspaceId': ws_id,
                    'ReportName': report.get('name', ''),
                    'DatasetName': dataset.get('name', ''),
                    'DatasetId': dataset.get('id', ''),
                    'DataSource': source['name'],
                    'DataSourceType': source['type'],
                    'ConnectionDetails': source['connectionDetails']
                })
        return rows

    def audit_dataflows(self, workspace: Dict) -> List[Dict]:
        ws_id = workspace.get('id')
        ws_name = workspace.get('name') or ''
        rows = []

        for dataflow in self.client.get_dataflows(ws_id):
            dataflow_id = dataflow.get('objectId') or dataflow.get('id')
            datasources = self.client.get_dataflow_datasources(ws_id, dataflow_id)
            for source in datasources_or_placeholder(datasources):
                rows.append({
                    'WorkspaceName': ws_name,
                    'WorkspaceId': ws_id,
                    'DataflowName': dataflow.get('name', ''),
                    'DataSource': source['name'],
                    'DataSourceType': source['type'],
                    'ConnectionDetails': source['connectionDetails']
                })
        return rows

    def export(self, rows: List[Dict], output_dir: str = '.', output_prefix: str = "powerbi_topology",
               create_excel: bool = True) -> Dict[str, str]:
        """
        Export audit rows to CSV (and optionally Excel)

        Args:
            rows: Rows produced by audit()
            output_dir: Directory receiving the files
            output_prefix: Prefix for output filenames
            create_excel: Also write a formatted .xlsx copy

        Returns:
            Dictionary with file paths
        """
        os.makedirs(output_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        csv_filename = os.path.join(output_dir, f"{output_prefix}_{timestamp}.csv")
        excel_filename = os.path.join(output_dir, f"{output_prefix}_{timestamp}.xlsx")

        file_paths = {}

        # Union of every row shape; missing fields stay blank
        df = pd.DataFrame(rows, columns=COLUMN_ORDER).fillna('')

        df.to_csv(csv_filename, index=False, encoding='utf-8-sig')
        file_paths['csv'] = os.path.abspath(csv_filename)
        self.logger.info(f"Exported to CSV: {csv_filename}")

        if create_excel:
            with pd.ExcelWriter(excel_filename, engine='xlsxwriter') as writer:
                df.to_excel(writer, sheet_name='PowerBI Topology', index=False)

                workbook = writer.book
                worksheet = writer.sheets['PowerBI Topology']

                header_format = workbook.add_format({
                    'bold': True,
                    'text_wrap': True,
                    'valign': 'top',
                    'fg_color': '#D7E4BC',
                    'border': 1
                })

                for col_num, value in enumerate(df.columns.values):
                    worksheet.write(0, col_num, value, header_format)
                    worksheet.set_column(col_num, col_num, 20)

            file_paths['excel'] = os.path.abspath(excel_filename)
            self.logger.info(f"Exported to Excel: {excel_filename}")

        self.logger.info(f"Export complete: {len(df)} records")
        return file_paths

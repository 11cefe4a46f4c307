#!/usr/bin/env python3
"""
PowerBI Partition Crawler
Reads partition names and their defining queries from selected datasets.

Datasets are picked from a topology audit CSV by a substring of their recorded
connection details. When a metadata query is refused, the operator identity is
temporarily granted Admin on the workspace, the query is retried once, and the
grant is revoked when the workspace is finished.
"""

import os
import json
import logging
from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd

from audit_log import AuditLog
from powerbi_client import PowerBIClient

PARTITION_QUERY = (
    'EVALUATE SELECTCOLUMNS(INFO.PARTITIONS(), '
    '"Name", [Name], "QueryDefinition", [QueryDefinition])'
)

PARTITION_COLUMNS = ['WorkspaceId', 'DatasetId', 'PartitionName', 'QueryDefinition']


def build_workspace_dataset_index(topology_csv: str, connection_filter: str) -> Dict[str, List[str]]:
    """
    Build the workspace -> dataset index from a topology audit CSV

    Args:
        topology_csv: CSV written by the topology auditor
        connection_filter: Substring the ConnectionDetails column must contain

    Returns:
        Dict of workspace id to unique dataset ids, in first-seen order
    """
    df = pd.read_csv(topology_csv, dtype=str, keep_default_na=False, encoding='utf-8-sig')

    matches = df[
        (df['DatasetId'] != '') &
        (df['ConnectionDetails'].str.contains(connection_filter, regex=False))
    ]
    pairs = matches.drop_duplicates(subset=['WorkspaceId', 'DatasetId'])

    index: Dict[str, List[str]] = {}
    for ws_id, dataset_id in zip(pairs['WorkspaceId'], pairs['DatasetId']):
        index.setdefault(ws_id, []).append(dataset_id)
    return index


def save_index(index: Dict[str, List[str]], path: str) -> None:
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(index, f, indent=2)


def load_index(path: str) -> Dict[str, List[str]]:
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def _column(row: Dict, name: str):
    # SELECTCOLUMNS returns bracketed keys, e.g. "[Name]"
    return row.get(f"[{name}]", row.get(name))


class PartitionWriter:
    """Appends partition rows to a CSV one at a time."""

    def __init__(self, path: str):
        self.path = path
        self.rows_written = 0

    def append(self, row: Dict) -> None:
        write_header = not os.path.exists(self.path) or os.path.getsize(self.path) == 0
        pd.DataFrame([row], columns=PARTITION_COLUMNS).to_csv(
            self.path, mode='a', header=write_header, index=False, encoding='utf-8'
        )
        self.rows_written += 1

    def reset(self) -> None:
        """Start a new, empty output file; rows from earlier runs are discarded."""
        if os.path.exists(self.path):
            os.remove(self.path)
        self.rows_written = 0


class ProgressMarker:
    """Persists the last workspace whose datasets and cleanup have completed."""

    def __init__(self, path: str):
        self.path = path

    def write(self, workspace_id: str) -> None:
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump({
                'last_completed_workspace': workspace_id,
                'completed_at': datetime.now().isoformat(timespec='seconds')
            }, f)

    def clear(self) -> None:
        if os.path.exists(self.path):
            os.remove(self.path)

    def read(self) -> Optional[str]:
        if not os.path.exists(self.path):
            return None
        with open(self.path, 'r', encoding='utf-8') as f:
            return json.load(f).get('last_completed_workspace')


class WorkspaceSession:
    """Elevation state for the workspace currently being crawled."""

    def __init__(self, workspace_id: str):
        self.workspace_id = workspace_id
        self.grant_attempted = False
        self.elevated = False


class CrawlSummary:
    def __init__(self):
        self.workspaces_processed = 0
        self.workspaces_skipped = 0
        self.datasets_queried = 0
        self.datasets_failed = 0
        self.rows_emitted = 0
        self.grants = 0
        self.revokes = 0

    def as_dict(self) -> Dict[str, int]:
        return dict(vars(self))


class PartitionCrawler:
    def __init__(self, client: PowerBIClient, audit_log: AuditLog, writer: PartitionWriter,
                 operator_upn: str, marker: Optional[ProgressMarker] = None, query: str = PARTITION_QUERY):
        """
        Args:
            client: Authenticated PowerBI client
            audit_log: Error log pair for this job
            writer: Append target for partition rows
            operator_upn: Identity impersonated by queries and elevated on failure
            marker: Optional last-completed-workspace marker, updated after each workspace
            query: DAX query returning Name and QueryDefinition columns
        """
        self.client = client
        self.audit_log = audit_log
        self.writer = writer
        self.operator_upn = operator_upn
        self.marker = marker
        self.query = query
        self.logger = logging.getLogger(__name__)
        self.summary = CrawlSummary()

    @staticmethod
    def resume_position(index: Dict[str, List[str]], resume_from: Optional[str]) -> int:
        if resume_from is None:
            return 0
        workspace_ids = list(index)
        if resume_from not in workspace_ids:
            raise ValueError(f"Checkpoint workspace {resume_from} is not in the workspace/dataset index")
        return workspace_ids.index(resume_from)

    def crawl(self, index: Dict[str, List[str]], resume_from: Optional[str] = None) -> CrawlSummary:
        """
        Crawl every (workspace, dataset) pair in the index

        Args:
            index: Workspace id -> dataset ids
            resume_from: Checkpoint workspace; earlier workspaces are skipped

        Returns:
            CrawlSummary with counts for the run
        """
        workspace_ids = list(index)
        start = self.resume_position(index, resume_from)
        if start:
            self.logger.info(f"Resuming from workspace {resume_from}, skipping {start} workspaces")
        self.summary.workspaces_skipped = start

        for i, ws_id in enumerate(workspace_ids[start:], start + 1):
            print(f"   Workspace {i:3d}/{len(workspace_ids)}: {ws_id} ({len(index[ws_id])} datasets)")
            self.crawl_workspace(ws_id, index[ws_id])

        self.logger.info(f"Partition crawl complete: {self.summary.as_dict()}")
        return self.summary

    def crawl_after(self, index: Dict[str, List[str]], last_completed: str) -> CrawlSummary:
        """Resume from the workspace following the last completed one."""
        position = self.resume_position(index, last_completed) + 1
        workspace_ids = list(index)
        if position >= len(workspace_ids):
            self.logger.info(f"Workspace {last_completed} was the last in the index, nothing to resume")
            self.summary.workspaces_skipped = len(workspace_ids)
            return self.summary
        return self.crawl(index, resume_from=workspace_ids[position])

    def crawl_workspace(self, workspace_id: str, dataset_ids: List[str]) -> None:
        session = WorkspaceSession(workspace_id)
        try:
            for dataset_id in dataset_ids:
                self.crawl_dataset(session, dataset_id)
        finally:
            if session.elevated:
                self.revoke(session)

        self.summary.workspaces_processed += 1
        if self.marker is not None:
            self.marker.write(workspace_id)

    def crawl_dataset(self, session: WorkspaceSession, dataset_id: str) -> None:
        self.summary.datasets_queried += 1
        try:
            rows = self.query_partitions(session.workspace_id, dataset_id)
        except Exception as first_error:
            self.logger.info(f"Metadata query refused for dataset {dataset_id}, elevating: {first_error}")
            self.elevate(session)
            try:
                rows = self.query_partitions(session.workspace_id, dataset_id)
            except Exception as e:
                self.summary.datasets_failed += 1
                self.audit_log.record("Metadata query failed after elevation", e,
                                      workspace_id=session.workspace_id, dataset_id=dataset_id)
                return

        self.emit(session.workspace_id, dataset_id, rows)

    def query_partitions(self, workspace_id: str, dataset_id: str) -> List[Dict]:
        return self.client.execute_queries(workspace_id, dataset_id, self.query,
                                           impersonated_user=self.operator_upn, include_nulls=True)

    def emit(self, workspace_id: str, dataset_id: str, rows: List[Dict]) -> None:
        for row in rows:
            self.writer.append({
                'WorkspaceId': workspace_id,
                'DatasetId': dataset_id,
                'PartitionName': _column(row, 'Name'),
                'QueryDefinition': _column(row, 'QueryDefinition')
            })
            self.summary.rows_emitted += 1
        self.logger.info(f"Dataset {dataset_id}: {len(rows)} partitions")

    def elevate(self, session: WorkspaceSession) -> None:
        # One grant per workspace, however many of its datasets are refused
        if session.grant_attempted:
            return
        session.grant_attempted = True
        try:
            self.client.add_workspace_user(session.workspace_id, self.operator_upn, 'Admin')
        except Exception as e:
            self.audit_log.record("Failed to grant Admin", e,
                                  workspace_id=session.workspace_id, user=self.operator_upn)
            return
        session.elevated = True
        self.summary.grants += 1

    def revoke(self, session: WorkspaceSession) -> None:
        try:
            self.client.delete_workspace_user(session.workspace_id, self.operator_upn)
            self.summary.revokes += 1
        except Exception as e:
            self.audit_log.record("Failed to revoke Admin, manual cleanup required", e,
                                  workspace_id=session.workspace_id, user=self.operator_upn)

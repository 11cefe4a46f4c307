#!/usr/bin/env python3
"""
PowerBI Tenant Audit
Command line entry point for the topology audit and the partition metadata crawl.

    powerbi-audit topology
    powerbi-audit partitions --input output/powerbi_topology_20240101_120000.csv
    powerbi-audit partitions --input ... --resume-from <workspace-id>
    powerbi-audit partitions --input ... --resume
"""

import os
import sys
import argparse
import logging
from typing import List, Optional

import pandas as pd

from audit_config import AuditConfig
from audit_log import AuditLog
from partition_crawler import (
    PartitionCrawler,
    PartitionWriter,
    ProgressMarker,
    build_workspace_dataset_index,
    load_index,
    save_index,
)
from powerbi_client import PowerBIClient
from topology_auditor import TopologyAuditor

INDEX_FILENAME = "workspace_dataset_index.json"
PARTITIONS_FILENAME = "partition_metadata.csv"
MARKER_FILENAME = "partition_progress.json"

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="powerbi-audit",
        description="PowerBI tenant topology and partition metadata audit",
    )
    parser.add_argument("--output-dir", help="Directory for CSV, index, marker and log files")
    parser.add_argument("--tenant-id", help="Azure AD tenant ID (default: AZURE_TENANT_ID)")
    parser.add_argument("--client-id", help="Application (client) ID (default: AZURE_CLIENT_ID)")
    parser.add_argument("--service-principal", action="store_true", default=None,
                        help="Authenticate with client credentials instead of the browser")

    subparsers = parser.add_subparsers(dest="command", required=True)

    topology = subparsers.add_parser("topology", help="Audit workspaces, reports, datasets and dataflows")
    topology.add_argument("--output-prefix", default=None, help="Prefix for the exported files")
    topology.add_argument("--no-excel", action="store_true", help="Skip the Excel export")

    partitions = subparsers.add_parser("partitions", help="Crawl partition queries of filtered datasets")
    partitions.add_argument("--input", required=True, help="Topology CSV produced by the topology command")
    partitions.add_argument("--filter", dest="connection_filter", help="Connection details substring")
    partitions.add_argument("--operator", help="UPN to impersonate and elevate (default: PBI_OPERATOR_UPN)")
    resume = partitions.add_mutually_exclusive_group()
    resume.add_argument("--resume-from", metavar="WORKSPACE_ID",
                        help="Skip workspaces before this one in the persisted index")
    resume.add_argument("--resume", action="store_true",
                        help="Continue after the last completed workspace recorded in the progress marker")
    return parser


def load_config(args: argparse.Namespace) -> AuditConfig:
    config = AuditConfig.from_env()
    if args.output_dir:
        config.output_dir = args.output_dir
    if args.tenant_id:
        config.tenant_id = args.tenant_id
    if args.client_id:
        config.client_id = args.client_id
    if args.service_principal is not None:
        config.use_service_principal = args.service_principal
    if getattr(args, "connection_filter", None):
        config.connection_filter = args.connection_filter
    if getattr(args, "operator", None):
        config.operator_upn = args.operator
    if getattr(args, "no_excel", False):
        config.create_excel = False
    return config


def create_client(config: AuditConfig) -> PowerBIClient:
    client = PowerBIClient(
        tenant_id=config.tenant_id,
        client_id=config.client_id,
        client_secret=config.client_secret,
        use_service_principal=config.use_service_principal,
        max_requests_per_hour=config.max_requests_per_hour,
    )
    client.authenticate()
    print("✓ Authentication successful")
    return client


def run_topology(args: argparse.Namespace, config: AuditConfig, client: PowerBIClient) -> int:
    audit_log = AuditLog.for_job("topology", os.path.join(config.output_dir, "logs"))
    try:
        auditor = TopologyAuditor(client, audit_log)

        print("\nScanning workspaces...")
        rows = auditor.audit()
        print(f"✓ Collected {len(rows)} topology rows")

        file_paths = auditor.export(
            rows,
            output_dir=config.output_dir,
            output_prefix=args.output_prefix or "powerbi_topology",
            create_excel=config.create_excel,
        )
    except Exception as e:
        audit_log.record("Topology run aborted", e)
        raise
    finally:
        audit_log.close()

    print("\nOutput files:")
    if 'csv' in file_paths:
        print(f"  📄 CSV: {file_paths['csv']}")
    if 'excel' in file_paths:
        print(f"  📊 Excel: {file_paths['excel']}")
    if auditor.skipped_workspaces:
        print(f"⚠ {len(auditor.skipped_workspaces)} workspaces skipped, see {audit_log.short_path}")

    if rows:
        print("\nSample data (first 3 records):")
        print(pd.DataFrame(rows[:3]).to_string(index=False, max_colwidth=30))
    return 0


def run_partitions(args: argparse.Namespace, config: AuditConfig, client: PowerBIClient) -> int:
    index_path = config.path(INDEX_FILENAME)
    marker = ProgressMarker(config.path(MARKER_FILENAME))
    resuming = bool(args.resume_from or args.resume)

    # A resumed run reuses the persisted index so the input file cannot shift the cursor
    if resuming and os.path.exists(index_path):
        index = load_index(index_path)
        print(f"✓ Loaded index for {len(index)} workspaces from {index_path}")
    else:
        index = build_workspace_dataset_index(args.input, config.connection_filter)
        save_index(index, index_path)
        print(f"✓ Indexed {sum(len(v) for v in index.values())} datasets "
              f"in {len(index)} workspaces matching '{config.connection_filter}'")

    audit_log = AuditLog.for_job("partitions", os.path.join(config.output_dir, "logs"))
    writer = PartitionWriter(config.path(PARTITIONS_FILENAME))
    crawler = PartitionCrawler(client, audit_log, writer, config.operator_upn, marker=marker)

    # A fresh run owns the output and the progress marker; only a resumed run continues them
    if not resuming:
        writer.reset()
        marker.clear()

    try:
        if args.resume:
            last_completed = marker.read()
            if last_completed is None:
                print("⚠ No progress marker found, starting from the first workspace")
                summary = crawler.crawl(index)
            else:
                summary = crawler.crawl_after(index, last_completed)
        else:
            summary = crawler.crawl(index, resume_from=args.resume_from)
    except Exception as e:
        audit_log.record("Partition crawl aborted", e)
        raise
    finally:
        audit_log.close()

    print("\n" + "=" * 50)
    print("PARTITION CRAWL COMPLETE")
    print("=" * 50)
    for key, value in summary.as_dict().items():
        print(f"  {key.replace('_', ' ')}: {value}")
    print(f"\n  📄 Partitions: {os.path.abspath(writer.path)}")
    if summary.grants != summary.revokes:
        print(f"⚠ {summary.grants - summary.revokes} Admin grants were not revoked, see {audit_log.short_path}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main execution function"""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    args = build_parser().parse_args(argv)
    config = load_config(args)

    print("PowerBI Tenant Audit")
    print("=" * 50)
    print(f"Authentication: {'Service Principal' if config.use_service_principal else 'Interactive'}")

    try:
        config.validate(need_operator=args.command == "partitions")
    except ValueError as e:
        print(f"Error: {e}")
        print("Set the environment variables or pass the matching command line options.")
        return 2

    os.makedirs(config.output_dir, exist_ok=True)

    try:
        client = create_client(config)
        if args.command == "topology":
            return run_topology(args, config, client)
        return run_partitions(args, config, client)

    except KeyboardInterrupt:
        print("\n⚠ Run interrupted by user")
        return 1
    except Exception as e:
        print(f"\n✗ Error during {args.command} run: {str(e)}")
        logger.error(f"Full error details: {str(e)}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""Provider cache and scan result tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19

One metadata table per store (Google Play, F-Droid, APKMirror) keyed by
package id, plus the VirusTotal and Hybrid Analysis per-file results keyed
by (package, file, sha256).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

METADATA_TABLES = ("google_play_apps", "fdroid_apps", "apkmirror_apps")
SCAN_TABLES = ("virustotal_results", "hybridanalysis_results")


def _metadata_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("package_id", sa.String(255), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("developer", sa.Text(), nullable=False),
        sa.Column("version", sa.String(128), nullable=True),
        sa.Column("icon_base64", sa.Text(), nullable=True),
        sa.Column("raw_response", sa.Text(), nullable=False),
        sa.Column("outcome", sa.String(16), nullable=False, comment="found | not_found"),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.Integer(), nullable=False),
    ]


def _scan_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("package_name", sa.String(255), nullable=False),
        sa.Column("file_path", sa.Text(), nullable=False),
        sa.Column("sha256", sa.String(64), nullable=False),
        sa.Column("raw_response", sa.Text(), nullable=False),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.Integer(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "google_play_apps",
        *_metadata_columns(),
        sa.Column("score", sa.Float(), nullable=True),
        sa.Column("installs", sa.String(64), nullable=True),
        sa.Column("updated", sa.Integer(), nullable=True),
    )
    op.create_table(
        "fdroid_apps",
        *_metadata_columns(),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("license", sa.Text(), nullable=True),
        sa.Column("updated", sa.Integer(), nullable=True),
    )
    op.create_table(
        "apkmirror_apps",
        *_metadata_columns(),
        sa.Column("icon_url", sa.Text(), nullable=True),
    )
    for table in METADATA_TABLES:
        op.create_index(f"ix_{table}_package_id", table, ["package_id"], unique=True)
        # TTL cleanup scans by age
        op.create_index(f"ix_{table}_updated_at", table, ["updated_at"])

    op.create_table(
        "virustotal_results",
        *_scan_columns(),
        sa.Column("last_analysis_date", sa.Integer(), nullable=False),
        sa.Column("malicious", sa.Integer(), nullable=False),
        sa.Column("suspicious", sa.Integer(), nullable=False),
        sa.Column("undetected", sa.Integer(), nullable=False),
        sa.Column("harmless", sa.Integer(), nullable=False),
        sa.Column("timeout", sa.Integer(), nullable=False),
        sa.Column("failure", sa.Integer(), nullable=False),
        sa.Column("type_unsupported", sa.Integer(), nullable=False),
        sa.Column("dex_count", sa.Integer(), nullable=True),
        sa.Column("reputation", sa.Integer(), nullable=False),
        sa.Column("not_found", sa.Boolean(), nullable=False),
        sa.UniqueConstraint("package_name", "file_path", "sha256", name="uq_virustotal_results_pkg_file_sha"),
    )
    op.create_table(
        "hybridanalysis_results",
        *_scan_columns(),
        sa.Column("job_id", sa.String(64), nullable=False),
        sa.Column("environment_id", sa.Integer(), nullable=False),
        sa.Column("environment_description", sa.Text(), nullable=False),
        sa.Column("state", sa.String(32), nullable=False),
        sa.Column("verdict", sa.String(64), nullable=False),
        sa.Column("threat_score", sa.Integer(), nullable=True),
        sa.Column("threat_level", sa.Integer(), nullable=True),
        sa.Column("total_signatures", sa.Integer(), nullable=True),
        sa.Column("classification_tags", sa.JSON(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.UniqueConstraint("package_name", "file_path", "sha256", name="uq_hybridanalysis_results_pkg_file_sha"),
    )
    for table in SCAN_TABLES:
        op.create_index(f"ix_{table}_package_name", table, ["package_name"])
        op.create_index(f"ix_{table}_sha256", table, ["sha256"])
        op.create_index(f"ix_{table}_updated_at", table, ["updated_at"])


def downgrade() -> None:
    for table in SCAN_TABLES:
        op.drop_index(f"ix_{table}_updated_at", table_name=table)
        op.drop_index(f"ix_{table}_sha256", table_name=table)
        op.drop_index(f"ix_{table}_package_name", table_name=table)
        op.drop_table(table)
    for table in METADATA_TABLES:
        op.drop_index(f"ix_{table}_updated_at", table_name=table)
        op.drop_index(f"ix_{table}_package_id", table_name=table)
        op.drop_table(table)

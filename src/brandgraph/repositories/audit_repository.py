"""
Resolution Audit Repository - ClickHouse audit trail for identity resolution

Every public resolver operation records the steps it took (session created,
customer linked, relinked, stitched, ...) under one resolution_id so link
decisions can be reconstructed later.
"""

import os
from datetime import datetime, timezone
from typing import Dict, List, Optional

from clickhouse_driver import Client


class ResolutionStep:
    """One auditable step of a resolution"""
    def __init__(
        self,
        step: str,
        internal_session_id: Optional[str] = None,
        customer_email: Optional[str] = None
    ):
        self.step = step
        self.internal_session_id = internal_session_id
        self.customer_email = customer_email
        self.created_at = datetime.now(timezone.utc)


class ResolutionAuditRepository:
    """Repository for the identity_audit_log table"""

    def __init__(self, host: str = None, port: int = None, client: Client = None):
        self.client = client or Client(
            host=host or os.getenv('CLICKHOUSE_HOST', 'localhost'),
            port=int(port or os.getenv('CLICKHOUSE_PORT', '9000')),
            user=os.getenv('CLICKHOUSE_USER', 'brandgraph'),
            password=os.getenv('CLICKHOUSE_PASSWORD', 'brandgraph_dev'),
            database=os.getenv('CLICKHOUSE_DATABASE', 'brandgraph')
        )
        self._table_ready = False

    def ensure_table_exists(self):
        """Create identity_audit_log if it doesn't exist"""
        if self._table_ready:
            return

        self.client.execute("""
            CREATE TABLE IF NOT EXISTS identity_audit_log (
                resolution_id String,
                operation LowCardinality(String),
                step String,
                internal_session_id String,
                customer_email String,
                created_at DateTime64(3, 'UTC') DEFAULT now()
            )
            ENGINE = MergeTree()
            ORDER BY (resolution_id, created_at)
            SETTINGS index_granularity = 8192
        """)

        self._table_ready = True

    def log_resolution_steps(self, resolution_id: str, operation: str, steps: List[ResolutionStep]) -> None:
        """Write all steps of one resolution in a single insert"""
        if not steps:
            return
        self.ensure_table_exists()

        query = """
            INSERT INTO identity_audit_log (
                resolution_id, operation, step,
                internal_session_id, customer_email, created_at
            ) VALUES
        """

        self.client.execute(
            query,
            [{
                'resolution_id': resolution_id,
                'operation': operation,
                'step': step.step,
                'internal_session_id': step.internal_session_id or '',
                'customer_email': step.customer_email or '',
                'created_at': step.created_at
            } for step in steps]
        )

    def get_resolution_steps(self, resolution_id: str) -> List[Dict]:
        """Steps recorded for one resolution, oldest first"""
        query = """
            SELECT operation, step, internal_session_id, customer_email, created_at
            FROM identity_audit_log
            WHERE resolution_id = %(resolution_id)s
            ORDER BY created_at
        """

        result = self.client.execute(query, {'resolution_id': resolution_id})

        return [
            {
                'operation': row[0],
                'step': row[1],
                'internal_session_id': row[2] or None,
                'customer_email': row[3] or None,
                'created_at': row[4]
            }
            for row in result
        ]

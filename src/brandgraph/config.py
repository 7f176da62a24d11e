"""
Service configuration from environment variables
"""
import os

from brandgraph.core.identity_model import RelinkPolicy


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


class Settings:
    """Connection settings and feature switches; defaults match the local docker setup"""

    def __init__(
        self,
        neo4j_uri: str = 'bolt://localhost:7687',
        neo4j_user: str = 'neo4j',
        neo4j_password: str = 'brandgraph_dev',
        neo4j_database: str = 'neo4j',
        redis_host: str = 'localhost',
        redis_port: int = 6379,
        loyalty_cache_enabled: bool = False,
        loyalty_cache_ttl: int = 300,
        clickhouse_host: str = 'localhost',
        clickhouse_port: int = 9000,
        clickhouse_user: str = 'brandgraph',
        clickhouse_password: str = 'brandgraph_dev',
        clickhouse_database: str = 'brandgraph',
        audit_enabled: bool = False,
        relink_policy: RelinkPolicy = RelinkPolicy.REPOINT,
        log_level: str = 'INFO'
    ):
        self.neo4j_uri = neo4j_uri
        self.neo4j_user = neo4j_user
        self.neo4j_password = neo4j_password
        self.neo4j_database = neo4j_database
        self.redis_host = redis_host
        self.redis_port = redis_port
        self.loyalty_cache_enabled = loyalty_cache_enabled
        self.loyalty_cache_ttl = loyalty_cache_ttl
        self.clickhouse_host = clickhouse_host
        self.clickhouse_port = clickhouse_port
        self.clickhouse_user = clickhouse_user
        self.clickhouse_password = clickhouse_password
        self.clickhouse_database = clickhouse_database
        self.audit_enabled = audit_enabled
        self.relink_policy = RelinkPolicy(relink_policy)
        self.log_level = log_level

    @classmethod
    def from_env(cls) -> 'Settings':
        """
        Raises:
            ValueError: RELINK_POLICY or a port/TTL is not valid
        """
        return cls(
            neo4j_uri=os.getenv('NEO4J_URI', 'bolt://localhost:7687'),
            neo4j_user=os.getenv('NEO4J_USER', 'neo4j'),
            neo4j_password=os.getenv('NEO4J_PASSWORD', 'brandgraph_dev'),
            neo4j_database=os.getenv('NEO4J_DATABASE', 'neo4j'),
            redis_host=os.getenv('REDIS_HOST', 'localhost'),
            redis_port=int(os.getenv('REDIS_PORT', '6379')),
            loyalty_cache_enabled=_flag('LOYALTY_CACHE_ENABLED', 'false'),
            loyalty_cache_ttl=int(os.getenv('LOYALTY_CACHE_TTL', '300')),
            clickhouse_host=os.getenv('CLICKHOUSE_HOST', 'localhost'),
            clickhouse_port=int(os.getenv('CLICKHOUSE_PORT', '9000')),
            clickhouse_user=os.getenv('CLICKHOUSE_USER', 'brandgraph'),
            clickhouse_password=os.getenv('CLICKHOUSE_PASSWORD', 'brandgraph_dev'),
            clickhouse_database=os.getenv('CLICKHOUSE_DATABASE', 'brandgraph'),
            audit_enabled=_flag('AUDIT_ENABLED', 'false'),
            relink_policy=RelinkPolicy(os.getenv('RELINK_POLICY', 'repoint').strip().lower()),
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper()
        )

    def describe(self) -> dict:
        """Settings safe to log (no secrets)"""
        return {
            'neo4j_uri': self.neo4j_uri,
            'neo4j_database': self.neo4j_database,
            'loyalty_cache_enabled': self.loyalty_cache_enabled,
            'audit_enabled': self.audit_enabled,
            'relink_policy': self.relink_policy.value,
        }

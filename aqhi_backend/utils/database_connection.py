#!/usr/bin/env python3
"""
Simple MySQL connection for the reading-history store
"""

import logging
from typing import Any, Dict

import mysql.connector

logger = logging.getLogger(__name__)


class SimpleDatabase:
    """Simple database connection - fast and direct"""

    def __init__(self, connection_config: Dict[str, Any]):
        self.connection_config = {
            'host': connection_config.get('host', 'localhost'),
            'port': int(connection_config.get('port', 3306)),
            'user': connection_config.get('user', 'root'),
            'password': connection_config.get('password', ''),
            'database': connection_config.get('database', 'aqhi'),
            'connection_timeout': int(connection_config.get('connection_timeout', 10)),
        }

    def get_connection(self):
        """Get a direct database connection, or None when the server is unreachable"""
        try:
            return mysql.connector.connect(**self.connection_config)
        except mysql.connector.Error as e:
            logger.error(f"❌ Database connection failed: {e}")
            return None

    def describe(self) -> str:
        return f"{self.connection_config['user']}@{self.connection_config['host']}:" \
               f"{self.connection_config['port']}/{self.connection_config['database']}"

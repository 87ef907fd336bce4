"""
Tests for the asyncpg connection arguments shared by the app and Alembic.
"""

import ssl
from types import SimpleNamespace

from app.database import connect_args


def test_plain_connection_only_sets_timeout():
    args = connect_args(SimpleNamespace(database_connect_timeout=30, database_ssl=False))
    assert args == {"timeout": 30}


def test_ssl_connection_accepts_proxy_certificates():
    args = connect_args(SimpleNamespace(database_connect_timeout=10, database_ssl=True))
    assert args["timeout"] == 10
    ctx = args["ssl"]
    assert isinstance(ctx, ssl.SSLContext)
    assert ctx.check_hostname is False
    assert ctx.verify_mode == ssl.CERT_NONE

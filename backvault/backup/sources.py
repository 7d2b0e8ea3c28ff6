"""
Domain sources for backup runs.

Each domain is staged into a directory that ManifestBuilder can walk:
- DirectorySource: a directory tree walked in place (active assets, archives)
- DatabaseDumpSource: a consistent dump of the application database written
  into the run's staging directory
"""

import logging
import os
import shutil
import sqlite3
import subprocess
from pathlib import Path
from typing import Any, Dict

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from .errors import SourceError, ValidationError

logger = logging.getLogger(__name__)

DOMAINS = ('database', 'active_assets', 'archives')


class DirectorySource:
    """Handler for directory-backed domains. Nothing is copied."""

    def __init__(self, root: str):
        self.root = root

    def stage(self, staging_dir: str) -> str:
        """
        Return the directory to walk.

        Raises:
            SourceError: If the directory does not exist
        """
        root = Path(self.root).expanduser()
        if not root.is_dir():
            raise SourceError(f"Path does not exist: {self.root}")
        return str(root)

    def cleanup(self):
        """Cleanup any resources. Directory sources have none."""
        pass


class DatabaseDumpSource:
    """
    Handler for the database domain.

    The dump is written under a fixed file name so that an unchanged
    database produces an unchanged fingerprint from run to run.
    """

    def __init__(self, database_url: str, pg_dump_path: str = 'pg_dump', timeout: int = 3600):
        """
        Initialize database dump source.

        Args:
            database_url: SQLAlchemy URL of the database to dump
            pg_dump_path: pg_dump executable for PostgreSQL databases
            timeout: Maximum seconds a dump may take
        """
        self.database_url = database_url
        self.pg_dump_path = pg_dump_path
        self.timeout = timeout
        self.dump_dir = None

    def stage(self, staging_dir: str) -> str:
        """
        Dump the database into staging_dir/database.

        Returns:
            Directory holding the dump

        Raises:
            ValidationError: If the database dialect is not supported
            SourceError: If the dump fails
        """
        try:
            url = make_url(self.database_url)
        except ArgumentError as e:
            raise ValidationError(f"Invalid database URL: {e}", {'database_url': str(e)})

        self.dump_dir = Path(staging_dir) / 'database'
        self.dump_dir.mkdir(parents=True, exist_ok=True)

        backend = url.get_backend_name()
        if backend == 'sqlite':
            self._dump_sqlite(url.database, self.dump_dir / 'database.sqlite3')
        elif backend == 'postgresql':
            self._dump_postgresql(url, self.dump_dir / 'database.sql')
        else:
            raise ValidationError(
                f"Unsupported database dialect: {backend}",
                {'database_url': 'only sqlite and postgresql can be dumped'}
            )
        return str(self.dump_dir)

    def _dump_sqlite(self, database: str, dump_path: Path):
        """Copy a SQLite database with the online backup API."""
        if not database or database == ':memory:':
            raise SourceError("Cannot dump an in-memory SQLite database")
        if not os.path.isfile(database):
            raise SourceError(f"Database file does not exist: {database}")

        source = sqlite3.connect(f"file:{database}?mode=ro", uri=True)
        try:
            target = sqlite3.connect(str(dump_path))
            try:
                source.backup(target)
            finally:
                target.close()
        except sqlite3.Error as e:
            raise SourceError(f"SQLite backup failed: {e}")
        finally:
            source.close()
        logger.info(f"Dumped SQLite database {database} ({dump_path.stat().st_size} bytes)")

    def _dump_postgresql(self, url, dump_path: Path):
        """Dump a PostgreSQL database in plain SQL format with pg_dump."""
        env = os.environ.copy()
        if url.password:
            env['PGPASSWORD'] = str(url.password)
        dsn = url.set(drivername='postgresql', password=None).render_as_string(hide_password=False)

        command = [
            self.pg_dump_path,
            '--format=plain',
            '--no-password',
            f'--file={dump_path}',
            f'--dbname={dsn}',
        ]
        try:
            subprocess.run(command, env=env, check=True, capture_output=True, timeout=self.timeout)
        except FileNotFoundError:
            raise SourceError(f"pg_dump not found: {self.pg_dump_path}")
        except subprocess.TimeoutExpired:
            raise SourceError(f"pg_dump timed out after {self.timeout}s")
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b'').decode('utf-8', errors='replace').strip()
            raise SourceError(f"pg_dump failed (exit {e.returncode}): {stderr}")
        logger.info(f"Dumped PostgreSQL database {url.database} ({dump_path.stat().st_size} bytes)")

    def cleanup(self):
        """Remove the dump directory."""
        if self.dump_dir and self.dump_dir.exists():
            shutil.rmtree(self.dump_dir, ignore_errors=True)
        self.dump_dir = None


def create_source(domain: str, config: Dict[str, Any]):
    """
    Factory function to create the source handler for a domain.

    Args:
        domain: 'database', 'active_assets' or 'archives'
        config: Mapping with database_url, active_assets_dir and archives_dir

    Returns:
        DirectorySource or DatabaseDumpSource instance

    Raises:
        ValidationError: If domain is invalid or its location is not configured
    """
    if domain == 'database':
        if not config.get('database_url'):
            raise ValidationError("Source database is not configured", {'database_url': 'required'})
        return DatabaseDumpSource(config['database_url'], config.get('pg_dump_path') or 'pg_dump')
    elif domain in ('active_assets', 'archives'):
        root = config.get(f'{domain}_dir')
        if not root:
            raise ValidationError(f"Directory for {domain} is not configured", {f'{domain}_dir': 'required'})
        return DirectorySource(root)
    else:
        raise ValidationError(f"Invalid domain: {domain}", {'domains': f'unknown domain {domain}'})

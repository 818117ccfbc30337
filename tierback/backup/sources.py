"""
Archive producers for backup sources.

Supports:
- DirectorySource: tar archive of a local directory tree
- SSHDirectorySource: directory tree fetched from a remote host via SSH/SFTP
- MySQLDumpSource: gzip-compressed mysqldump of one database

Every producer exposes ``produce(source, dest_dir) -> archive path`` and
``cleanup()``, and raises ProductionError when no usable archive results.
"""

import os
import shutil
import subprocess
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from .compression import (
    CompressionError,
    archive_extension,
    create_archive,
    generate_archive_filename,
    get_archive_size,
    gzip_file,
)


class ProductionError(Exception):
    """Raised when an archive cannot be produced for a source."""
    pass


def _source_name(path: str) -> str:
    return os.path.basename(path.rstrip('/'))


class DirectorySource:
    """
    Producer for local directory trees.

    Archives are named ``{site}-files-{timestamp}.{ext}`` where ``site`` is
    the directory basename.
    """

    kind = 'files'

    def __init__(self, compression_format: str = 'tar.gz', clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize directory producer.

        Args:
            compression_format: Tar format for the archive
            clock: Callable returning the timestamp to embed (default: datetime.now)
        """
        self.compression_format = compression_format
        self.extension = archive_extension(compression_format)
        self.clock = clock or datetime.now

    def source_id(self, source: str) -> str:
        return _source_name(source)

    def produce(self, source: str, dest_dir: str) -> str:
        """
        Archive a local directory into dest_dir.

        Raises:
            ProductionError: If the directory is missing or archiving fails
        """
        path = Path(source).expanduser()
        if not path.is_dir():
            raise ProductionError(f"Directory does not exist: {source}")

        return self._archive(path, self.source_id(source), dest_dir)

    def _archive(self, path: Path, source_id: str, dest_dir: str) -> str:
        filename = generate_archive_filename(source_id, self.kind, self.extension, self.clock())
        archive_base = os.path.join(dest_dir, filename[:-(len(self.extension) + 1)])

        try:
            archive_path = create_archive([str(path)], archive_base, self.compression_format)
            if get_archive_size(archive_path) == 0:
                raise ProductionError(f"Archive for {source_id} is empty")
            return archive_path
        except CompressionError as e:
            raise ProductionError(f"Failed to archive {source_id}: {e}")

    def cleanup(self):
        """Local directories hold no connections."""
        pass


class SSHDirectorySource(DirectorySource):
    """
    Producer for directory trees on a remote host.

    The tree is downloaded over SFTP into a staging directory inside
    dest_dir, archived like a local directory, and the staging copy removed.
    The SSH connection is opened on first use and reused until cleanup().
    """

    def __init__(self, config: Dict[str, Any], compression_format: str = 'tar.gz',
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize SSH producer.

        Args:
            config: SSH configuration dict with keys:
                - host: SSH hostname or IP
                - port: SSH port (default 22)
                - username: SSH username
                - password: SSH password (optional if using key)
                - private_key: Path to private key file (optional)
            compression_format: Tar format for the archive
            clock: Callable returning the timestamp to embed
        """
        super().__init__(compression_format, clock)
        self.host = config.get('host')
        self.port = int(config.get('port') or 22)
        self.username = config.get('username')
        self.password = config.get('password')
        self.private_key_path = config.get('private_key')

        self.ssh_client = None
        self.sftp_client = None

    def _connect(self):
        """
        Establish SSH and SFTP sessions.

        Raises:
            ProductionError: If connection fails
        """
        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': 30
        }

        if self.password:
            connect_kwargs['password'] = self.password
        elif self.private_key_path:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise ProductionError(f"Private key not found: {self.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)
        else:
            raise ProductionError("Either password or private_key must be provided")

        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            raise ProductionError(f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            raise ProductionError(f"Failed to connect to {self.host}: {e}")

    def _download_directory(self, remote_path: str, local_path: Path):
        """Recursively download a remote directory."""
        local_path.mkdir(parents=True, exist_ok=True)

        for item in self.sftp_client.listdir_attr(remote_path):
            remote_item = f"{remote_path.rstrip('/')}/{item.filename}"
            local_item = local_path / item.filename

            if item.st_mode & 0o040000:  # S_ISDIR
                self._download_directory(remote_item, local_item)
            else:
                self.sftp_client.get(remote_item, str(local_item))

    def produce(self, source: str, dest_dir: str) -> str:
        """
        Download and archive a remote directory.

        Raises:
            ProductionError: If connection, download or archiving fails
        """
        if self.sftp_client is None:
            self._connect()

        source_id = self.source_id(source)
        staging_dir = tempfile.mkdtemp(prefix='sftp_', dir=dest_dir)
        local_copy = Path(staging_dir) / source_id

        try:
            self._download_directory(source, local_copy)
            return self._archive(local_copy, source_id, dest_dir)
        except FileNotFoundError:
            raise ProductionError(f"Remote path not found: {source}")
        except PermissionError:
            raise ProductionError(f"Permission denied accessing remote path: {source}")
        except (paramiko.SSHException, OSError) as e:
            raise ProductionError(f"Failed to download {source}: {e}")
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)

    def cleanup(self):
        """Close SFTP/SSH connections."""
        for client in (self.sftp_client, self.ssh_client):
            if client is not None:
                try:
                    client.close()
                except (paramiko.SSHException, OSError):
                    pass
        self.sftp_client = None
        self.ssh_client = None


class MySQLDumpSource:
    """
    Producer for MySQL databases.

    Runs mysqldump into ``{database}-backup-{timestamp}.sql`` and gzips it to
    ``.sql.gz``. An empty or missing dump is a failure.
    """

    kind = 'backup'

    def __init__(
        self,
        host: str = '127.0.0.1',
        port: int = 3306,
        user: str = 'backupuser',
        password: Optional[str] = None,
        mysqldump_cmd: str = 'mysqldump',
        timeout: int = 3600,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.mysqldump_cmd = mysqldump_cmd
        self.timeout = timeout
        self.clock = clock or datetime.now

    def source_id(self, source: str) -> str:
        return source

    def build_command(self, database: str) -> List[str]:
        return [
            self.mysqldump_cmd,
            '--no-tablespaces',
            '-h', self.host,
            '-P', str(self.port),
            '-u', self.user,
            database,
        ]

    def produce(self, source: str, dest_dir: str) -> str:
        """
        Dump and compress one database into dest_dir.

        Raises:
            ProductionError: If mysqldump fails or produces no output
        """
        filename = generate_archive_filename(source, self.kind, 'sql', self.clock())
        sql_path = os.path.join(dest_dir, filename)

        env = os.environ.copy()
        if self.password:
            env['MYSQL_PWD'] = self.password

        try:
            with open(sql_path, 'wb') as out:
                result = subprocess.run(
                    self.build_command(source),
                    stdout=out,
                    stderr=subprocess.PIPE,
                    env=env,
                    timeout=self.timeout
                )
        except FileNotFoundError:
            self._discard(sql_path)
            raise ProductionError(f"mysqldump not found: {self.mysqldump_cmd}")
        except subprocess.TimeoutExpired:
            self._discard(sql_path)
            raise ProductionError(f"mysqldump timed out after {self.timeout}s for {source}")
        except OSError as e:
            self._discard(sql_path)
            raise ProductionError(f"Failed to run mysqldump for {source}: {e}")

        if result.returncode != 0:
            self._discard(sql_path)
            stderr = result.stderr.decode('utf-8', errors='replace').strip() if result.stderr else ''
            raise ProductionError(f"mysqldump exited with {result.returncode} for {source}: {stderr}")

        if not os.path.exists(sql_path) or os.path.getsize(sql_path) == 0:
            self._discard(sql_path)
            raise ProductionError(f"Backup failed for {source}. Output file is empty or missing.")

        try:
            return gzip_file(sql_path)
        except CompressionError as e:
            self._discard(sql_path)
            raise ProductionError(str(e))

    @staticmethod
    def _discard(path: str):
        if os.path.exists(path):
            os.remove(path)

    def cleanup(self):
        """mysqldump runs per call; nothing to release."""
        pass


def create_producer(kind: str, settings, clock: Optional[Callable[[], datetime]] = None):
    """
    Factory function to create the producer for a pipeline.

    Args:
        kind: 'files' or 'database'
        settings: Settings instance
        clock: Optional timestamp source for archive names

    Returns:
        DirectorySource, SSHDirectorySource or MySQLDumpSource instance

    Raises:
        ValueError: If kind or the files source type is invalid
    """
    if kind == 'files':
        if settings.files_source_type == 'local':
            return DirectorySource(settings.files_compression, clock)
        elif settings.files_source_type == 'ssh':
            return SSHDirectorySource(settings.ssh_config(), settings.files_compression, clock)
        raise ValueError(f"Invalid source type: {settings.files_source_type}")
    elif kind == 'database':
        return MySQLDumpSource(
            host=settings.mysql_host,
            port=settings.mysql_port,
            user=settings.mysql_user,
            password=settings.mysql_password,
            mysqldump_cmd=settings.mysqldump_cmd,
            timeout=settings.dump_timeout_seconds,
            clock=clock
        )
    else:
        raise ValueError(f"Invalid pipeline kind: {kind}")

"""Database operations shared by sandboxes and releases.

Commands run inside the app container, where DATABASE_URL is set:
docker compose exec on a sandbox, kubectl exec on a release. The host
class provides container_exec(command) and container_shell(command).
"""

import shlex

from provisioners.base import ProvisionError

DEFAULT_DUMP_PATH = '/tmp/dump.sql'

# Database types with a SQL client in the app container
SQL_DATABASES = ('postgres',)


class DatabaseOps:
    """Mixin adding sql/dump/restore/shell to a provisioner."""

    def database_type(self) -> str:
        """First configured SQL database.

        Raises:
            ProvisionError: If no SQL database is configured
        """
        for db_type in self.config.databases:
            if db_type in SQL_DATABASES:
                return db_type
        if self.config.has_database():
            configured = ', '.join(self.config.databases)
            raise ProvisionError(f"No SQL client for configured database: {configured}")
        raise ProvisionError("No database configured")

    def sql(self, query: str):
        self.database_type()
        return self.psql(query)

    def psql(self, query: str):
        return self.container_exec(f'psql "$DATABASE_URL" -c {shlex.quote(query)}')

    def db_dump(self, output_path: str = DEFAULT_DUMP_PATH):
        self.database_type()
        return self.container_exec(f'pg_dump "$DATABASE_URL" -f {shlex.quote(output_path)}')

    def db_restore(self, input_path: str = DEFAULT_DUMP_PATH):
        self.database_type()
        return self.container_exec(f'psql "$DATABASE_URL" -f {shlex.quote(input_path)}')

    def db_shell_command(self) -> str:
        """Remote command that opens psql on a tty."""
        self.database_type()
        return self.container_shell('psql "$DATABASE_URL"')

    def container_exec(self, command: str):
        raise NotImplementedError

    def container_shell(self, command: str) -> str:
        raise NotImplementedError

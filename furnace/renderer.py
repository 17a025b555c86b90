"""Renders serving-engine and PHP-FPM configuration for a recipe."""

from __future__ import annotations

import getpass
import shutil
import textwrap
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

from loguru import logger

from furnace.allocator import Allocation
from furnace.errors import RenderError
from furnace.recipe import Recipe

CONFIG_FILES = {"nginx": "nginx.conf", "apache": "httpd.conf"}
RUNTIME_CONFIG_FILE = "php-fpm.conf"


@dataclass
class RenderedConfig:
    """Configuration files generated for one recipe.

    ``path``/``content`` hold the serving engine config, ``runtime_path``/
    ``runtime_content`` the PHP-FPM config. The first line of each is a
    generation comment carrying the timestamp.
    """

    recipe_name: str
    serving_engine: str
    runtime_version: str
    directory: Path
    run_directory: Path
    path: Path
    content: str
    runtime_path: Path
    runtime_content: str
    socket_path: Path
    address: str
    port: int
    hostname: str
    generated_at: str

    @property
    def body(self) -> str:
        return _strip_header(self.content)

    @property
    def runtime_body(self) -> str:
        return _strip_header(self.runtime_content)


def _strip_header(text: str) -> str:
    return text.split("\n", 1)[1] if "\n" in text else ""


class ConfigRenderer:
    """Writes per-recipe config under ``sites_directory/<recipe>/``.

    Runtime state of the launched processes (pid files, sockets, engine logs
    and temp files) is pointed at ``run_directory/<recipe>/``.
    """

    def __init__(
        self,
        sites_directory: str | Path,
        run_directory: str | Path,
        *,
        runtime_versions: Iterable[str] = ("7.4", "8.0", "8.1", "8.2", "8.3", "8.4"),
        apache_modules_dir: str = "/usr/lib/apache2/modules",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.sites_directory = Path(sites_directory)
        self.run_directory = Path(run_directory)
        self.runtime_versions = set(runtime_versions)
        self.apache_modules_dir = apache_modules_dir
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._templates: Dict[str, Callable[[Recipe, Allocation, Path, Path], str]] = {
            "nginx": self._nginx_config,
            "apache": self._apache_config,
        }

    # ------------------------------------------------------------------
    def render(self, recipe: Recipe, allocation: Allocation) -> RenderedConfig:
        template = self._templates.get(recipe.serving_engine)
        if template is None:
            raise RenderError(
                f"Unsupported serving engine: {recipe.serving_engine}",
                recipe_name=recipe.name,
                stage="render",
            )

        version = self._template_version(recipe.runtime_version)
        if version not in self.runtime_versions:
            raise RenderError(
                f"No config template for PHP {recipe.runtime_version} "
                f"(known: {', '.join(sorted(self.runtime_versions))})",
                recipe_name=recipe.name,
                stage="render",
            )

        site_dir = self.site_directory(recipe.name)
        run_dir = self.run_directory / recipe.name
        socket_path = run_dir / "php-fpm.sock"
        generated_at = self._clock().isoformat()

        content = f"# Generated by furnace for {recipe.name} at {generated_at}\n" + template(
            recipe, allocation, run_dir, socket_path
        )
        runtime_content = (
            f"; Generated by furnace for {recipe.name} at {generated_at}\n"
            + self._php_fpm_config(recipe, run_dir, socket_path)
        )

        rendered = RenderedConfig(
            recipe_name=recipe.name,
            serving_engine=recipe.serving_engine,
            runtime_version=version,
            directory=site_dir,
            run_directory=run_dir,
            path=site_dir / CONFIG_FILES[recipe.serving_engine],
            content=content,
            runtime_path=site_dir / RUNTIME_CONFIG_FILE,
            runtime_content=runtime_content,
            socket_path=socket_path,
            address=allocation.address,
            port=allocation.port,
            hostname=allocation.hostname_binding,
            generated_at=generated_at,
        )

        try:
            site_dir.mkdir(parents=True, exist_ok=True)
            for sub in ("logs", "tmp"):
                (run_dir / sub).mkdir(parents=True, exist_ok=True)
            rendered.path.write_text(rendered.content, encoding="utf-8")
            rendered.runtime_path.write_text(rendered.runtime_content, encoding="utf-8")
        except OSError as exc:
            raise RenderError(
                f"Failed to write config for {recipe.name}: {exc}",
                recipe_name=recipe.name,
                stage="render",
            ) from exc

        logger.info(f"Rendered {recipe.serving_engine} config for {recipe.name} at {rendered.path}")
        return rendered

    def remove(self, recipe_name: str) -> None:
        """Delete the recipe's rendered config; a missing directory is fine."""
        site_dir = self.site_directory(recipe_name)
        if site_dir.exists():
            shutil.rmtree(site_dir)
            logger.info(f"Removed rendered config for {recipe_name}")

    def site_directory(self, recipe_name: str) -> Path:
        return self.sites_directory / recipe_name

    # ------------------------------------------------------------------
    @staticmethod
    def _template_version(runtime_version: str) -> str:
        return ".".join(runtime_version.split(".")[:2])

    def _nginx_config(self, recipe: Recipe, allocation: Allocation, run_dir: Path, socket_path: Path) -> str:
        logs = run_dir / "logs"
        tmp = run_dir / "tmp"
        return textwrap.dedent(f"""\
            worker_processes 1;
            pid {run_dir}/nginx.pid;
            error_log {logs}/error.log;

            events {{
                worker_connections 256;
            }}

            http {{
                default_type application/octet-stream;
                types {{
                    text/html html htm;
                    text/css css;
                    application/javascript js;
                    application/json json;
                    image/png png;
                    image/jpeg jpg jpeg;
                    image/svg+xml svg;
                }}

                access_log {logs}/access.log;
                client_body_temp_path {tmp}/client_body;
                proxy_temp_path {tmp}/proxy;
                fastcgi_temp_path {tmp}/fastcgi;
                uwsgi_temp_path {tmp}/uwsgi;
                scgi_temp_path {tmp}/scgi;

                server {{
                    listen {allocation.address}:{allocation.port};
                    server_name {allocation.hostname_binding};
                    root {recipe.document_root};

                    index index.php index.html;

                    location / {{
                        try_files $uri $uri/ /index.php?$query_string;
                    }}

                    location ~ \\.php$ {{
                        fastcgi_pass unix:{socket_path};
                        fastcgi_index index.php;
                        fastcgi_param SCRIPT_FILENAME $document_root$fastcgi_script_name;
                        fastcgi_param QUERY_STRING $query_string;
                        fastcgi_param REQUEST_METHOD $request_method;
                        fastcgi_param CONTENT_TYPE $content_type;
                        fastcgi_param CONTENT_LENGTH $content_length;
                        fastcgi_param REQUEST_URI $request_uri;
                        fastcgi_param DOCUMENT_ROOT $document_root;
                        fastcgi_param SERVER_NAME $server_name;
                        fastcgi_param SERVER_PORT $server_port;
                        fastcgi_param REMOTE_ADDR $remote_addr;
                        fastcgi_param HTTP_HOST $host;
                    }}
                }}
            }}
            """)

    def _apache_config(self, recipe: Recipe, allocation: Allocation, run_dir: Path, socket_path: Path) -> str:
        logs = run_dir / "logs"
        modules = self.apache_modules_dir
        return textwrap.dedent(f"""\
            ServerRoot "{run_dir}"
            Listen {allocation.address}:{allocation.port}
            PidFile "{run_dir}/httpd.pid"

            LoadModule mpm_event_module {modules}/mod_mpm_event.so
            LoadModule unixd_module {modules}/mod_unixd.so
            LoadModule authz_core_module {modules}/mod_authz_core.so
            LoadModule dir_module {modules}/mod_dir.so
            LoadModule mime_module {modules}/mod_mime.so
            LoadModule rewrite_module {modules}/mod_rewrite.so
            LoadModule log_config_module {modules}/mod_log_config.so
            LoadModule proxy_module {modules}/mod_proxy.so
            LoadModule proxy_fcgi_module {modules}/mod_proxy_fcgi.so

            ServerName {allocation.hostname_binding}
            ErrorLog "{logs}/error.log"
            LogFormat "%h %l %u %t \\"%r\\" %>s %b" common
            CustomLog "{logs}/access.log" common
            DirectoryIndex index.php index.html

            <VirtualHost {allocation.address}:{allocation.port}>
                ServerName {allocation.hostname_binding}
                DocumentRoot "{recipe.document_root}"

                <Directory "{recipe.document_root}">
                    AllowOverride All
                    Require all granted
                </Directory>

                <FilesMatch \\.php$>
                    SetHandler "proxy:unix:{socket_path}|fcgi://localhost/"
                </FilesMatch>
            </VirtualHost>
            """)

    def _php_fpm_config(self, recipe: Recipe, run_dir: Path, socket_path: Path) -> str:
        user = getpass.getuser()
        return textwrap.dedent(f"""\
            [global]
            pid = {run_dir}/php-fpm.pid
            error_log = {run_dir}/logs/php-fpm.log
            daemonize = no

            [{recipe.name}]
            user = {user}
            listen = {socket_path}
            listen.owner = {user}
            listen.mode = 0660
            pm = dynamic
            pm.max_children = 5
            pm.start_servers = 2
            pm.min_spare_servers = 1
            pm.max_spare_servers = 3
            chdir = {recipe.project_path}
            catch_workers_output = yes
            """)


__all__ = ["ConfigRenderer", "RenderedConfig"]

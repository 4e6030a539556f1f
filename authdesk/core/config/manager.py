from __future__ import annotations

from typing import Optional

from pydantic import ValidationError

from authdesk.core.config.io import atomic_write_json, quarantine_corrupt, read_json_file
from authdesk.core.config.models import AppConfig
from authdesk.core.config.paths import AppPaths
from authdesk.core.errors import ConfigError


class ConfigManager:
    """
    Loads config/app.json. A missing file is created with defaults; an unreadable
    or invalid one is moved to config/backups/ and replaced by defaults.
    """

    def __init__(self, *, fs: Optional[AppPaths] = None, logger=None, read_only: bool = False):
        self.fs = fs or AppPaths(".")
        self.logger = logger
        self.read_only = read_only
        self._cfg: Optional[AppConfig] = None

    def load(self) -> AppConfig:
        rr = read_json_file(self.fs.config_file)
        if rr.ok:
            try:
                self._cfg = AppConfig.model_validate(rr.data)
                return self._cfg
            except ValidationError as e:
                if self.logger:
                    self.logger.warning(f"Invalid config {self.fs.config_file}; restoring defaults: {e.error_count()} error(s)")
                if not self.read_only:
                    quarantine_corrupt(self.fs.config_file, self.fs.config_backups_dir)
        elif not rr.missing:
            if self.logger:
                self.logger.warning(f"Corrupt config {self.fs.config_file} ({rr.error}); restoring defaults")
            if not self.read_only:
                quarantine_corrupt(self.fs.config_file, self.fs.config_backups_dir)
        elif self.logger:
            self.logger.info(f"Missing config {self.fs.config_file}; creating defaults.")

        self._cfg = AppConfig()
        if not self.read_only:
            self.save(self._cfg)
        return self._cfg

    def get(self) -> AppConfig:
        if self._cfg is None:
            return self.load()
        return self._cfg

    def save(self, cfg: AppConfig) -> None:
        if self.read_only:
            raise ConfigError("Configuration is read-only.")
        atomic_write_json(self.fs.config_file, cfg.model_dump(mode="json"), self.fs.config_backups_dir)
        self._cfg = cfg

    def manifest_path(self) -> str:
        return self.fs.resolve(self.get().manifest_path)

    def manifest_backups_dir(self) -> str:
        return self.fs.manifest_backups_dir(self.get().manifest_path)

    def text_log(self) -> str:
        return self.fs.text_log(self.get().log_dir)

    def error_log(self) -> str:
        return self.fs.error_log(self.get().log_dir)

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class AppPaths:
    """
    On-disk layout of one installation:

      <root>/config/app.json         application config
      <root>/config/backups/         config backups and quarantined files
      <root>/<manifest_path>         account manifest (maFiles/manifest.json)
      <manifest dir>/backups/        manifest pre-write backups
      <root>/<log_dir>/              authdesk.log, errors.jsonl
    """

    root: str = "."

    @property
    def config_dir(self) -> str:
        return os.path.join(self.root, "config")

    @property
    def config_file(self) -> str:
        return os.path.join(self.config_dir, "app.json")

    @property
    def config_backups_dir(self) -> str:
        return os.path.join(self.config_dir, "backups")

    def resolve(self, path: str) -> str:
        """Relative paths from app.json are anchored at the installation root."""
        path = os.path.expanduser(path)
        if os.path.isabs(path):
            return path
        return os.path.join(self.root, path)

    def manifest_backups_dir(self, manifest_path: str) -> str:
        return os.path.join(os.path.dirname(self.resolve(manifest_path)) or ".", "backups")

    def text_log(self, log_dir: str) -> str:
        return os.path.join(self.resolve(log_dir), "authdesk.log")

    def error_log(self, log_dir: str) -> str:
        return os.path.join(self.resolve(log_dir), "errors.jsonl")

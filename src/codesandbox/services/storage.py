from __future__ import annotations
from pathlib import Path
import shutil

import structlog

from ..core.errors import WorkspaceError
from ..core.languages import LanguageConfig

log = structlog.get_logger(__name__)


class LocalFSStorage:
    """
    One ephemeral directory per execution:
      <temp_root>/<execution_id>/
        ├─ <source file>          (code the user submitted)
        ├─ <compiled artifact>    (compiled languages only)
        └─ input.txt | input_<n>.txt  (static stdin)
    """

    def __init__(self, root: Path):
        # always work with an absolute path
        self.root = root if root.is_absolute() else root.resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def workspace_path(self, execution_id: str) -> Path:
        return self.root / execution_id

    def create_workspace(self, execution_id: str) -> Path:
        p = self.workspace_path(execution_id)
        try:
            p.mkdir(parents=True, exist_ok=False)
        except OSError as e:
            raise WorkspaceError(f"Failed to create execution environment: {e}") from e
        return p

    def write_source(self, workspace: Path, config: LanguageConfig, code: str) -> Path:
        path = config.source_path(workspace)
        try:
            path.write_text(code, encoding="utf-8")
        except OSError as e:
            raise WorkspaceError(f"Failed to write source file: {e}") from e
        return path

    def write_stdin(self, workspace: Path, text: str, name: str = "input.txt") -> Path:
        path = workspace / name
        try:
            path.write_text(text, encoding="utf-8")
        except OSError as e:
            raise WorkspaceError(f"Failed to write input file: {e}") from e
        return path

    def cleanup(self, workspace: Path) -> bool:
        """
        Delete every entry of the workspace, then the directory itself.
        Best effort: a failed deletion is logged and skipped, never raised.
        """
        ok = True
        try:
            entries = list(workspace.iterdir())
        except FileNotFoundError:
            return True
        except OSError as e:
            log.warning("workspace_list_failed", workspace=str(workspace), error=str(e))
            entries = []
            ok = False

        for entry in entries:
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except OSError as e:
                log.warning("workspace_entry_delete_failed", path=str(entry), error=str(e))
                ok = False

        try:
            workspace.rmdir()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("workspace_delete_failed", workspace=str(workspace), error=str(e))
            ok = False

        if ok:
            log.debug("workspace_cleaned", workspace=str(workspace))
        return ok

"""Per-attempt scratch directories.

Every job attempt owns a directory tree under the workspace root::

    <root>/<job_id>-a<attempt>/
        input/     downloaded source
        work/      encoder output, one directory per variant
        package/   validated variants plus master.m3u8, ready to publish

The tree is removed when the attempt ends, whatever the outcome.
"""

import logging
import shutil
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Union

from hls_pipeline.core.logging import log_error, log_info, log_warning
from hls_pipeline.core.metrics import WORKSPACES_ACTIVE
from hls_pipeline.modules.transcoding.errors import ResourceError

logger = logging.getLogger(__name__)


@dataclass
class Workspace:
    """Directory tree exclusively owned by one job attempt."""
    job_id: str
    attempt: int
    path: Path
    released: bool = False

    @property
    def input_dir(self) -> Path:
        return self.path / "input"

    @property
    def work_dir(self) -> Path:
        return self.path / "work"

    @property
    def package_dir(self) -> Path:
        return self.path / "package"


class WorkspaceManager:
    """Allocates and releases job workspaces under a root directory."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def acquire(self, job_id: str, attempt: int = 1) -> Workspace:
        """Create the directory tree for a job attempt.

        Args:
            job_id: Job identifier
            attempt: Attempt number, so retries never reuse a directory

        Returns:
            The allocated workspace

        Raises:
            ResourceError: If the root is unwritable or the path already exists
        """
        path = self.root / f"{job_id}-a{attempt}"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path.mkdir()
        except FileExistsError:
            raise ResourceError(f"Workspace {path} already exists")
        except OSError as e:
            raise ResourceError(f"Cannot create workspace {path}: {e}") from e

        workspace = Workspace(job_id=job_id, attempt=attempt, path=path)
        try:
            for directory in (workspace.input_dir, workspace.work_dir, workspace.package_dir):
                directory.mkdir()
        except OSError as e:
            shutil.rmtree(path, ignore_errors=True)
            raise ResourceError(f"Cannot create workspace {path}: {e}") from e

        WORKSPACES_ACTIVE.inc()
        log_info(logger, "Workspace acquired", job_id=job_id, workspace=str(path))
        return workspace

    def release(self, workspace: Workspace) -> bool:
        """Remove a workspace tree.

        Removal errors are logged and never raised. Releasing an already
        released workspace is a no-op.

        Returns:
            True if this call released the workspace
        """
        if workspace.released:
            log_warning(
                logger,
                "Workspace already released",
                job_id=workspace.job_id,
                workspace=str(workspace.path),
            )
            return False

        workspace.released = True
        WORKSPACES_ACTIVE.dec()
        try:
            shutil.rmtree(workspace.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            log_error(
                logger,
                "Failed to remove workspace",
                exception=e,
                job_id=workspace.job_id,
                workspace=str(workspace.path),
            )
        return True

    @contextmanager
    def session(self, job_id: str, attempt: int = 1) -> Iterator[Workspace]:
        """Acquire a workspace and release it on every exit path."""
        workspace = self.acquire(job_id, attempt)
        try:
            yield workspace
        finally:
            self.release(workspace)

    def purge(self) -> int:
        """Remove every leftover workspace under the root.

        Only safe while no attempt is running against this root, i.e. at
        worker start before any task is accepted. Trees of attempts that were
        killed without reaching ``release`` are reclaimed here.

        Returns:
            Number of removed workspaces
        """
        if not self.root.is_dir():
            return 0

        removed = 0
        for entry in self.root.iterdir():
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
                removed += 1
            except OSError as e:
                log_error(logger, "Failed to remove leftover workspace", exception=e, workspace=str(entry))
        if removed:
            log_warning(logger, "Leftover workspaces removed", root=str(self.root), count=removed)
        return removed

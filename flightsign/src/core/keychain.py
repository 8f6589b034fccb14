import os
import random
import re
import secrets
import string
import subprocess
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from flightsign.logger import get_console
from flightsign.src.core.errors import CertificateImportError, ContainerCreationError
from flightsign.src.core.interrupts import InterruptRegistry, get_interrupt_registry
from flightsign.src.core.models import ContainerState

KEYCHAIN_PREFIX = "flightsign-"
# Keychains older than this are leftovers from crashed runs
STALE_KEYCHAIN_SECONDS = 6 * 60 * 60
IDENTITY_PATTERN = re.compile(r'\d+\) ([A-F0-9]{40}) "(.*?)"')

Runner = Callable[..., subprocess.CompletedProcess]


@dataclass
class KeychainHandle:
    """A temporary keychain owned by exactly one run"""

    name: str
    path: Path
    password: str = field(repr=False)
    state: ContainerState = ContainerState.CREATED
    imported: List[Path] = field(default_factory=list)

    @property
    def is_cleaned(self) -> bool:
        return self.state is ContainerState.CLEANED

    def companion_files(self) -> List[Path]:
        folder = self.path.parent
        names = [f"{self.name}.keychain", f"{self.name}.keychain-db", f"{self.name}.keychain-db.sb"]
        return [self.path] + [folder / n for n in names if folder / n != self.path]


@dataclass
class ImportReport:
    imported: List[Path] = field(default_factory=list)
    failed: Dict[Path, str] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        """Some files imported, some did not; the run carries on"""
        return bool(self.failed)

    def raise_if_empty(self) -> None:
        if self.failed and not self.imported:
            raise CertificateImportError(
                f"None of {len(self.failed)} certificate files could be imported",
                imported=[],
                failed=[str(p) for p in self.failed],
            )


def _scope_slug(scope_id: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", scope_id.lower()).strip("-")
    return slug[:32] or "run"


class EphemeralKeychainManager:
    """Creates, populates and always deletes per-run keychains via `security`"""

    def __init__(
        self,
        keychain_dir: Path,
        runner: Runner = subprocess.run,
        interrupts: Optional[InterruptRegistry] = None,
    ):
        self.console = get_console()
        self.keychain_dir = Path(keychain_dir)
        self.runner = runner
        self.interrupts = interrupts or get_interrupt_registry()
        self.release_count: Dict[str, int] = {}

    def _security(self, *args: str) -> subprocess.CompletedProcess:
        return self.runner(["security", *args], capture_output=True, text=True)

    def acquire(self, scope_id: str, password: Optional[str] = None) -> KeychainHandle:
        """Create and unlock a uniquely named keychain for this run"""
        try:
            self.keychain_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ContainerCreationError(
                f"Cannot create keychain directory {self.keychain_dir}: {e}"
            )
        if not os.access(self.keychain_dir, os.W_OK):
            raise ContainerCreationError(
                f"Keychain directory {self.keychain_dir} is not writable"
            )

        suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=8))
        name = f"{KEYCHAIN_PREFIX}{_scope_slug(scope_id)}-{suffix}"
        handle = KeychainHandle(
            name=name,
            path=self.keychain_dir / f"{name}.keychain-db",
            password=password or secrets.token_urlsafe(24),
        )

        self.console.log(f"[yellow]Creating keychain: {handle.name}")
        result = self._security("create-keychain", "-p", handle.password, str(handle.path))
        if result.returncode != 0:
            # Nothing to delete remotely, but create-keychain may leave a partial file
            handle.state = ContainerState.FAILED
            self._remove_files(handle)
            handle.state = ContainerState.CLEANED
            raise ContainerCreationError(
                f"security create-keychain failed: {(result.stderr or result.stdout).strip()}"
            )

        # From here on the keychain exists and must be deleted no matter what
        self.interrupts.register(handle.name, lambda: self.release(handle))

        try:
            self._check(
                self._security("unlock-keychain", "-p", handle.password, str(handle.path)),
                "unlock-keychain",
            )
            handle.state = ContainerState.UNLOCKED
            self._check(
                self._security(
                    "set-keychain-settings", "-lut", "21600", str(handle.path)
                ),
                "set-keychain-settings",
            )
        except ContainerCreationError:
            handle.state = ContainerState.FAILED
            self.release(handle)
            raise

        return handle

    def _check(self, result: subprocess.CompletedProcess, step: str) -> None:
        if result.returncode != 0:
            self.console.log(
                f"[red]{step} failed:[/]\nstdout: {result.stdout}\nstderr: {result.stderr}"
            )
            raise ContainerCreationError(f"security {step} failed")

    def _import_file(self, handle: KeychainHandle, path: Path, password: Optional[str]) -> Optional[str]:
        """Import one file; returns an error message instead of raising"""
        suffix = path.suffix.lower()
        cmd = ["import", str(path), "-k", str(handle.path)]
        if suffix in (".p12", ".pfx"):
            cmd += ["-f", "pkcs12", "-P", password or ""]
        elif suffix != ".cer":
            return f"unsupported file type {path.suffix}"
        cmd += ["-A", "-T", "/usr/bin/codesign", "-T", "/usr/bin/security"]

        result = self._security(*cmd)
        if result.returncode != 0:
            return (result.stderr or result.stdout or "import failed").strip()
        return None

    def import_existing(
        self, handle: KeychainHandle, files: Iterable[Path], password: Optional[str]
    ) -> ImportReport:
        """Import what we can; failures are reported, not raised"""
        report = ImportReport()
        for path in files:
            path = Path(path)
            self.console.log(f"[yellow]Importing certificate: {path.name}")
            error = self._import_file(handle, path, password)
            if error:
                self.console.log(f"[red]Import of {path.name} failed:[/] {error}")
                report.failed[path] = error
            else:
                report.imported.append(path)

        if report.imported:
            handle.imported.extend(report.imported)
            self._allow_codesign(handle)
            handle.state = ContainerState.POPULATED
        if report.degraded:
            self.console.log(
                f"[yellow]{len(report.failed)} of "
                f"{len(report.failed) + len(report.imported)} certificate files "
                "could not be imported, missing ones will be created"
            )
        return report

    def import_certificate(
        self, handle: KeychainHandle, path: Path, password: Optional[str]
    ) -> None:
        """Import a single freshly created certificate; this one must succeed"""
        error = self._import_file(handle, Path(path), password)
        if error:
            raise CertificateImportError(
                f"Could not import {Path(path).name}: {error}",
                imported=[str(p) for p in handle.imported],
                failed=[str(path)],
            )
        handle.imported.append(Path(path))
        self._allow_codesign(handle)
        handle.state = ContainerState.POPULATED

    def _allow_codesign(self, handle: KeychainHandle) -> None:
        # Lets codesign use the keys without a UI prompt
        result = self._security(
            "set-key-partition-list",
            "-S",
            "apple-tool:,apple:",
            "-s",
            "-k",
            handle.password,
            str(handle.path),
        )
        if result.returncode != 0:
            self.console.log(
                f"[red]Partition list setup failed:[/] {(result.stderr or '').strip()}"
            )

    def signing_identities(self, handle: KeychainHandle) -> List[str]:
        result = self._security(
            "find-identity", "-v", "-p", "codesigning", str(handle.path)
        )
        return [sha for sha, _ in IDENTITY_PATTERN.findall(result.stdout or "")]

    def mark_in_use(self, handle: KeychainHandle) -> None:
        handle.state = ContainerState.IN_USE

    def release(self, handle: KeychainHandle) -> None:
        """Delete the keychain and its companion files; safe to call repeatedly"""
        if handle.is_cleaned:
            return

        result = self._security("delete-keychain", str(handle.path))
        if result.returncode != 0 and handle.path.exists():
            self.console.log(
                f"[yellow]delete-keychain failed for {handle.name}, removing files directly"
            )
        self._remove_files(handle)

        handle.state = ContainerState.CLEANED
        self.release_count[handle.name] = self.release_count.get(handle.name, 0) + 1
        self.interrupts.unregister(handle.name)
        self.console.log(f"[green]Cleaned up keychain {handle.name}[/]")

    def _remove_files(self, handle: KeychainHandle) -> None:
        for path in handle.companion_files():
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                self.console.log(f"[red]Could not remove {path}:[/] {e}")

    @contextmanager
    def session(
        self, scope_id: str, password: Optional[str] = None
    ) -> Iterator[KeychainHandle]:
        handle = self.acquire(scope_id, password)
        try:
            yield handle
        finally:
            self.release(handle)

    def cleanup_stale(self, max_age: float = STALE_KEYCHAIN_SECONDS) -> List[Path]:
        """Remove keychains left behind by runs that were killed outright"""
        removed = []
        if not self.keychain_dir.exists():
            return removed
        cutoff = time.time() - max_age
        for path in self.keychain_dir.glob(f"{KEYCHAIN_PREFIX}*.keychain-db"):
            if path.stat().st_mtime >= cutoff:
                continue
            self.console.log(f"[yellow]Cleaning up old keychain:[/] {path.name}")
            self._security("delete-keychain", str(path))
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            removed.append(path)
        return removed

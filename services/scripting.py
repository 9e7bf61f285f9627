"""
Script Virtual Machine Pool

Runs user scripts stored under the script directory, each in its own
virtual machine (VM) with a stable UUID, under a per-run timeout and a
pool-wide cap on live VMs.

Script Format (default Python engine):
    Script files use the `.gct` extension and hold Python source that
    defines a coroutine `main(ctx)` and, optionally, a repeat `timer`:

        timer = "5s"

        async def main(ctx):
            ticker = ctx.tickers.get("binance", Instrument.parse("BTC-USDT"), AssetClass.PERPETUAL_SWAP)
            ctx.logger.info(f"last: {ticker.last}")

    Without a timer (or with a timer <= 0) the VM runs once and is removed.
    With one, `main` runs again every interval until the VM is stopped.
    `Instrument` and `AssetClass` are predefined in every script.

    Unless `allow_imports` is set, scripts run with a reduced set of builtins
    and may only import SAFE_MODULES. Files go through ctx.write_output.

Directory Layout:
    <script_dir>/*.gct              scripts
    <script_dir>/output/            files written by scripts
    <script_dir>/version_history/   timestamp-prefixed copies of replaced scripts

Usage:
    manager = ScriptManager(settings.scripting)
    await manager.start()

    vm = await manager.execute("price_alert")
    print(manager.query(str(vm.id)))
    await manager.stop_vm(str(vm.id))
"""

import ast
import asyncio
import builtins
import contextlib
import hashlib
import importlib
import inspect
import io
import os
import shutil
import threading
import time
import types
import uuid
import zipfile
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from core.config import ScriptingConfig
from core.errors import (
    CapacityExhaustedError,
    InvalidScriptPathError,
    NotStartedError,
    PermanentError,
    ScriptingDisabledError,
    ScriptValidationError,
    UnknownVMError,
)
from core.logging import get_logger
from core.schemas import AssetClass, Instrument, ScriptStatus, SubsystemState
from core.utils.time import current_utc_datetime, parse_duration
from services.subsystem import Subsystem

SCRIPT_EXTENSION = ".gct"
OUTPUT_DIR = "output"
VERSION_HISTORY_DIR = "version_history"

# Modules a script may import when imports are restricted. None exports every
# public non-module attribute; a tuple exports just those names.
SAFE_MODULES: Dict[str, Optional[tuple]] = {
    "asyncio": ("sleep", "gather", "wait_for", "TimeoutError", "CancelledError"),
    "math": None,
    "statistics": None,
    "json": ("dumps", "loads", "JSONDecodeError"),
    "datetime": ("date", "datetime", "time", "timedelta", "timezone"),
    "decimal": ("Decimal", "ROUND_HALF_UP", "ROUND_DOWN", "ROUND_UP", "InvalidOperation"),
    "random": None,
    "re": None,
}

SAFE_BUILTINS = frozenset({
    "abs", "all", "any", "bool", "bytes", "chr", "dict", "divmod", "enumerate",
    "filter", "float", "format", "frozenset", "hash", "int", "isinstance", "iter",
    "len", "list", "map", "max", "min", "next", "ord", "pow", "print", "range",
    "repr", "reversed", "round", "set", "slice", "sorted", "str", "sum", "tuple",
    "zip", "None", "True", "False",
    "ArithmeticError", "AttributeError", "Exception", "IndexError", "KeyError",
    "LookupError", "NotImplementedError", "RuntimeError", "StopAsyncIteration",
    "StopIteration", "TypeError", "ValueError", "ZeroDivisionError",
})

# Attributes leading from plain values to frames, code objects and module globals
BLOCKED_ATTRIBUTES = frozenset({
    "gi_frame", "gi_code", "gi_yieldfrom",
    "cr_frame", "cr_code", "cr_await", "cr_origin",
    "ag_frame", "ag_code", "ag_await",
    "f_back", "f_builtins", "f_code", "f_globals", "f_locals",
    "tb_frame", "tb_next",
})


# ============================================
# Script Engine
# ============================================

class CompiledScript:
    """Result of compiling a script: its entry point and repeat timer."""

    def __init__(self, main: Callable[[Any], Any], timer: Any = None) -> None:
        self.main = main
        self.timer = timer


class ScriptEngine(ABC):
    """Turns script source into something the pool can run."""

    @abstractmethod
    def validate(self, path: Path) -> None:
        """Raise if the file is not a valid script. Must not execute it."""

    @abstractmethod
    def compile(self, source: str, filename: str) -> CompiledScript:
        ...


class PythonScriptEngine(ScriptEngine):
    """
    Default engine: scripts are Python modules defining `async def main(ctx)`.

    Each compile executes the module body in a fresh namespace. Unless
    `allow_imports` is set the script runs restricted:
    - only SAFE_BUILTINS are available (no open/exec/eval/getattr/...)
    - only SAFE_MODULES may be imported, as views without submodules
    - underscore-prefixed names and attributes, frame and code attributes
      and class definitions are rejected before anything executes
    """

    def __init__(self, allow_imports: bool = False) -> None:
        self.allow_imports = allow_imports

    def validate(self, path: Path) -> None:
        source = path.read_text(encoding="utf-8")
        tree = ast.parse(source, filename=str(path))
        if not any(isinstance(node, ast.AsyncFunctionDef) and node.name == "main" for node in tree.body):
            raise ValueError(f"{path.name}: script must define 'async def main(ctx)'")
        if not self.allow_imports:
            self._check_tree(tree, path.name)

    def compile(self, source: str, filename: str) -> CompiledScript:
        tree = ast.parse(source, filename=filename)
        if not self.allow_imports:
            self._check_tree(tree, Path(filename).name)
        code = compile(tree, filename, "exec")
        namespace: Dict[str, Any] = {
            "__name__": f"script_{Path(filename).stem}",
            "__builtins__": self._builtins(),
            "Instrument": Instrument,
            "AssetClass": AssetClass,
        }
        exec(code, namespace)
        main = namespace.get("main")
        if main is None or not inspect.iscoroutinefunction(main):
            raise ValueError(f"{filename}: script must define 'async def main(ctx)'")
        return CompiledScript(main=main, timer=namespace.get("timer"))

    @staticmethod
    def _check_tree(tree: ast.AST, name: str) -> None:
        """Raise ValueError on the first construct a restricted script may not use."""
        for node in ast.walk(tree):
            attrs: List[str] = []
            if isinstance(node, ast.Attribute):
                attrs.append(node.attr)
            elif isinstance(node, ast.Name):
                attrs.append(node.id)
            elif isinstance(node, ast.alias):
                attrs.append(node.name)
            elif isinstance(node, ast.ClassDef):
                raise ValueError(f"{name}:{node.lineno}: class definitions are not allowed in scripts")
            # match-statement class patterns
            attrs.extend(getattr(node, "kwd_attrs", None) or ())

            for attr in attrs:
                if (attr.startswith("_") and attr != "_") or attr in BLOCKED_ATTRIBUTES:
                    line = getattr(node, "lineno", "?")
                    raise ValueError(f"{name}:{line}: access to '{attr}' is not allowed in scripts")

    def _builtins(self) -> Dict[str, Any]:
        if self.allow_imports:
            return dict(vars(builtins))

        scope = {key: value for key, value in vars(builtins).items() if key in SAFE_BUILTINS}

        def restricted_import(name, globals=None, locals=None, fromlist=(), level=0):
            if level != 0 or name not in SAFE_MODULES:
                raise ImportError(f"import of '{name}' is not allowed in scripts")
            return module_view(name)

        scope["__import__"] = restricted_import
        return scope


def module_view(name: str) -> types.SimpleNamespace:
    """Public non-module attributes of a SAFE_MODULES entry."""
    module = importlib.import_module(name)
    exported = SAFE_MODULES[name] or [key for key in dir(module) if not key.startswith("_")]
    view = {}
    for key in exported:
        value = getattr(module, key)
        if not inspect.ismodule(value):
            view[key] = value
    return types.SimpleNamespace(**view)


# ============================================
# Virtual Machine
# ============================================

class ScriptContext:
    """
    Handle passed to a script's main().

    Attributes:
        id: VM id
        name: Script short name
        logger: Logger named after the script
        services: Whatever the pool owner exposes (exchanges, registries, ...)

    Files are written and read through write_output/read_output, which keep
    every path inside the output directory.
    """

    def __init__(self, vm: "VirtualMachine", output_dir: Path, services: Dict[str, Any]) -> None:
        self.id = str(vm.id)
        self.name = vm.short_name
        self._output_dir = output_dir.resolve()
        self.logger = get_logger(f"scripts.{vm.short_name}")
        self.services = services

    def __getattr__(self, item: str) -> Any:
        try:
            return self.services[item]
        except KeyError:
            raise AttributeError(item) from None

    def _output_path(self, filename: str) -> Path:
        path = (self._output_dir / filename).resolve()
        if not str(path).startswith(str(self._output_dir) + os.sep):
            raise InvalidScriptPathError(filename)
        return path

    def write_output(self, filename: str, data: str) -> None:
        path = self._output_path(filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(data, encoding="utf-8")

    def read_output(self, filename: str) -> str:
        return self._output_path(filename).read_text(encoding="utf-8")

    def __str__(self) -> str:
        return f"{self.name}-{self.id}"


class VirtualMachine:
    """
    One loaded script.

    Attributes:
        id: Stable UUID assigned at load
        file: Absolute script path
        hash: SHA-256 of contents + short name
        timer: Repeat interval in seconds, 0 for one-shot
        runs / failures / last_error: Run statistics
    """

    def __init__(self, file: Path) -> None:
        self.id = uuid.uuid4()
        self.file = file
        self.source = ""
        self.hash = ""
        self.compiled: Optional[CompiledScript] = None
        self.timer = 0.0
        self.next_run: Optional[datetime] = None
        self.runs = 0
        self.failures = 0
        self.last_error: Optional[str] = None
        self.task: Optional[asyncio.Task] = None

    @property
    def short_name(self) -> str:
        return self.file.name

    @property
    def path(self) -> Path:
        return self.file.parent

    def status(self) -> ScriptStatus:
        return ScriptStatus(
            id=str(self.id),
            name=self.short_name,
            path=str(self.path),
            next_run=self.next_run,
            runs=self.runs,
            failures=self.failures,
            last_error=self.last_error,
        )

    def __repr__(self) -> str:
        return f"<VirtualMachine(id={self.id}, name='{self.short_name}')>"


# ============================================
# Pool
# ============================================

class ScriptManager(Subsystem):
    """
    Script VM pool, managed as the `gctscript` subsystem.

    Every operation except start() requires the subsystem to be running;
    while stopped they raise ScriptingDisabledError.
    """

    name = "gctscript"

    def __init__(
        self,
        config: Optional[ScriptingConfig] = None,
        engine: Optional[ScriptEngine] = None,
        services: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__()
        self.config = config or ScriptingConfig()
        if self.config.script_dir is None:
            raise ValueError("scripting config has no script_dir")
        self.script_dir = Path(self.config.script_dir).resolve()
        self.engine = engine or PythonScriptEngine(allow_imports=self.config.allow_imports)
        self.services = dict(services or {})
        self._vms: Dict[uuid.UUID, VirtualMachine] = {}
        self._lock = threading.RLock()

    # ============================================
    # Lifecycle
    # ============================================

    async def _start(self) -> None:
        (self.script_dir / OUTPUT_DIR).mkdir(parents=True, exist_ok=True)

    async def _stop(self) -> None:
        await self._stop_all()

    def _require_running(self) -> None:
        if self.state == SubsystemState.STOPPED:
            raise ScriptingDisabledError()
        if not self.is_running():
            raise NotStartedError(self.name)

    async def autoload(self) -> None:
        """Execute every script on the auto_load list; failures are logged."""
        for name in list(self.config.auto_load):
            try:
                await self.execute(name)
            except Exception as e:
                self.logger.error(f"Autoload of script {name} failed: {e}")

    @property
    def running_count(self) -> int:
        with self._lock:
            return len(self._vms)

    # ============================================
    # Paths
    # ============================================

    def _resolve(self, name: str, extension: Optional[str] = SCRIPT_EXTENSION) -> Path:
        path = Path(name)
        if extension and path.suffix != extension:
            path = path.with_name(path.name + extension)
        if not path.is_absolute():
            path = self.script_dir / path
        path = path.resolve()
        if not str(path).startswith(str(self.script_dir) + os.sep):
            raise InvalidScriptPathError(str(path))
        return path

    # ============================================
    # VM Operations
    # ============================================

    def load(self, name: str) -> VirtualMachine:
        """
        Create a VM for a script file.

        Raises:
            CapacityExhaustedError: If max_virtual_machines VMs are live
            InvalidScriptPathError: If the path escapes the script directory
            FileNotFoundError: If the script does not exist
        """
        self._require_running()
        file = self._resolve(name)
        vm = VirtualMachine(file)
        with self._lock:
            if len(self._vms) >= self.config.max_virtual_machines:
                raise CapacityExhaustedError(
                    f"max virtual machines ({self.config.max_virtual_machines}) reached"
                )
            self._vms[vm.id] = vm

        try:
            contents = file.read_bytes()
        except OSError:
            self._remove(vm.id)
            raise
        vm.source = contents.decode("utf-8")
        vm.hash = hashlib.sha256(contents + vm.short_name.encode()).hexdigest()
        if self.config.verbose:
            self.logger.debug(f"Loaded script: {vm.short_name} ID: {vm.id}")
        return vm

    def compile(self, vm: VirtualMachine) -> None:
        vm.compiled = self.engine.compile(vm.source, str(vm.file))

    async def run_with_context(self, vm: VirtualMachine) -> None:
        """
        Run the compiled script once under the script timeout.

        Raises:
            asyncio.TimeoutError: If the run exceeded script_timeout (it is cancelled)
            Exception: Whatever the script raised
        """
        if vm.compiled is None:
            raise PermanentError(f"script {vm.short_name} is not compiled")
        if self.config.verbose:
            self.logger.debug(f"Running script: {vm.short_name} ID: {vm.id}")

        ctx = ScriptContext(vm, self.script_dir / OUTPUT_DIR, self.services)
        vm.runs += 1
        try:
            await asyncio.wait_for(vm.compiled.main(ctx), timeout=self.config.script_timeout)
        except asyncio.TimeoutError:
            vm.failures += 1
            vm.last_error = f"run timed out after {self.config.script_timeout}s"
            raise
        except Exception as e:
            vm.failures += 1
            vm.last_error = str(e)
            raise

    async def compile_and_run(self, vm: VirtualMachine) -> bool:
        """
        Compile and run a VM, then either keep it repeating or remove it.

        Returns:
            True if the first run succeeded
        """
        try:
            self.compile(vm)
        except Exception as e:
            vm.last_error = str(e)
            self.logger.error(f"Script {vm.short_name} failed to compile: {e}")
            self._remove(vm.id)
            return False

        try:
            await self.run_with_context(vm)
        except Exception as e:
            self.logger.error(f"Script {vm.short_name} ({vm.id}) failed: {vm.last_error or e}")
            self._remove(vm.id)
            return False

        timer = vm.compiled.timer
        if timer in (None, ""):
            self._remove(vm.id)
            return True
        try:
            vm.timer = parse_duration(timer)
        except ValueError as e:
            self.logger.error(f"Script {vm.short_name} has an invalid timer: {e}")
            self._remove(vm.id)
            return True
        if vm.timer <= 0:
            self._remove(vm.id)
            return True

        await self._runner(vm)
        return True

    async def _runner(self, vm: VirtualMachine) -> None:
        while True:
            vm.next_run = current_utc_datetime() + timedelta(seconds=vm.timer)
            await asyncio.sleep(vm.timer)
            try:
                await self.run_with_context(vm)
            except Exception as e:
                self.logger.error(f"Script {vm.short_name} ({vm.id}) failed, stopping: {vm.last_error or e}")
                self._remove(vm.id)
                return

    async def execute(self, name: str) -> VirtualMachine:
        """Load a script and start running it in the background."""
        vm = self.load(name)
        vm.task = asyncio.create_task(self.compile_and_run(vm), name=f"script_{vm.id}")
        return vm

    def _remove(self, vm_id: uuid.UUID) -> Optional[VirtualMachine]:
        with self._lock:
            return self._vms.pop(vm_id, None)

    def _get(self, vm_id: str) -> VirtualMachine:
        try:
            key = uuid.UUID(str(vm_id))
        except ValueError:
            raise UnknownVMError(str(vm_id)) from None
        with self._lock:
            vm = self._vms.get(key)
        if vm is None:
            raise UnknownVMError(str(vm_id))
        return vm

    def query(self, vm_id: str) -> ScriptStatus:
        self._require_running()
        return self._get(vm_id).status()

    def list(self) -> List[ScriptStatus]:
        self._require_running()
        with self._lock:
            vms = [vm for vm in self._vms.values()]
        return [vm.status() for vm in vms]

    def list_scripts(self) -> List[str]:
        """Every script file under the script directory."""
        self._require_running()
        return sorted(str(p) for p in self.script_dir.rglob(f"*{SCRIPT_EXTENSION}"))

    async def stop_vm(self, vm_id: str) -> None:
        self._require_running()
        await self._shutdown_vm(self._get(vm_id))

    async def stop_all(self) -> None:
        self._require_running()
        await self._stop_all()

    async def _stop_all(self) -> None:
        with self._lock:
            vms = [vm for vm in self._vms.values()]
        for vm in vms:
            await self._shutdown_vm(vm)

    async def _shutdown_vm(self, vm: VirtualMachine) -> None:
        self._remove(vm.id)
        task = vm.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self.config.verbose:
            self.logger.debug(f"Shutting down script: {vm.short_name} ID: {vm.id}")

    # ============================================
    # Script Files
    # ============================================

    def read(self, name: str) -> bytes:
        """
        Raises:
            InvalidScriptPathError: If the path escapes the script directory
        """
        self._require_running()
        return self._resolve(name, extension=None).read_bytes()

    def autoload_toggle(self, name: str, enable: bool) -> None:
        """
        Add a script to, or remove it from, the auto_load list.

        Raises:
            PermanentError: If the script is missing or already in that state
        """
        self._require_running()
        name = Path(name).stem if name.endswith(SCRIPT_EXTENSION) else name
        if enable:
            if not self._resolve(name).exists():
                raise PermanentError(f"{name} does not exist")
            if name in self.config.auto_load:
                raise PermanentError(f"{name} already in autoload list")
            self.config.auto_load.append(name)
        else:
            if name not in self.config.auto_load:
                raise PermanentError(f"{name} not found in autoload list")
            self.config.auto_load.remove(name)

    async def upload(self, name: str, data: bytes, archived: bool = False, overwrite: bool = False) -> Path:
        """
        Store a script (or a ZIP of scripts) in the script directory.

        An existing script is only replaced with overwrite=True, after a copy
        is archived under version_history/. Archives are extracted next to the
        upload and every entry is validated; any failure removes the whole
        extracted directory.

        Returns:
            Path of the stored script or extracted directory

        Raises:
            InvalidScriptPathError: If a path escapes the script directory
            PermanentError: If the target exists and overwrite is False
            ScriptValidationError: Listing the files that failed validation
        """
        self._require_running()
        target = self._resolve(name, extension=None)
        destination = target.with_suffix("") if archived else target

        if destination.exists():
            if not overwrite:
                raise PermanentError(f"{name} script found and overwrite set to false")
            self._archive_previous(destination)

        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

        if not archived:
            try:
                await asyncio.to_thread(self.engine.validate, target)
            except Exception as e:
                target.unlink(missing_ok=True)
                raise ScriptValidationError([f"{target.name}: {e}"]) from e
            self.logger.info(f"script {target} written")
            return target

        try:
            files = self._extract(data, destination)
        except InvalidScriptPathError:
            shutil.rmtree(destination, ignore_errors=True)
            raise
        finally:
            target.unlink(missing_ok=True)

        failed = []
        for file in files:
            if file.suffix != SCRIPT_EXTENSION:
                continue
            try:
                await asyncio.to_thread(self.engine.validate, file)
            except Exception as e:
                self.logger.debug(f"Validation of {file} failed: {e}")
                failed.append(str(file))
        if failed:
            shutil.rmtree(destination, ignore_errors=True)
            raise ScriptValidationError(failed)

        self.logger.info(f"script archive {name} extracted to {destination}")
        return destination

    def _archive_previous(self, path: Path) -> None:
        history = self.script_dir / VERSION_HISTORY_DIR
        history.mkdir(parents=True, exist_ok=True)
        renamed = history / f"{time.time_ns()}-{path.name}"
        if path.is_dir():
            shutil.make_archive(str(renamed), "zip", root_dir=path)
            shutil.rmtree(path)
        else:
            shutil.move(str(path), str(renamed))
        self.logger.debug(f"Archived previous version of {path.name} to {renamed}")

    def _extract(self, data: bytes, destination: Path) -> List[Path]:
        prefix = str(self.script_dir) + os.sep
        files = []
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            for member in archive.infolist():
                path = (destination / member.filename).resolve()
                if not str(path).startswith(prefix):
                    raise InvalidScriptPathError(member.filename)
                if member.is_dir():
                    path.mkdir(parents=True, exist_ok=True)
                    continue
                path.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(member) as src, open(path, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                files.append(path)
        return files

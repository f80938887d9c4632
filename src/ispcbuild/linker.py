"""Aggregation of compiled objects into one static library."""

from __future__ import annotations

import hashlib
import shutil
import subprocess
import sys
import textwrap
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .compiler import ProcessResult
from .errors import LinkError, ToolchainContractError
from .models import BuildConfig, CompiledArtifact, TaskingMode
from .observability import StructuredLogger

ARCHIVE_SUFFIXES = (".a", ".lib")

# Task entry points ISPC-generated code calls when a kernel uses `launch`/`sync`.
# Both runtimes share the allocator; they differ in how ISPCLaunch schedules work.
_GLUE_ALLOC = """\
    typedef void (*ispcbuild_task_fn)(void *data, int thread_index, int thread_count,
                                      int task_index, int task_count,
                                      int task_index0, int task_index1, int task_index2,
                                      int task_count0, int task_count1, int task_count2);

    typedef struct ispcbuild_block {
        struct ispcbuild_block *next;
        void *memory;
    } ispcbuild_block;

    static void *ispcbuild_aligned_alloc(size_t size, size_t alignment) {
    #if defined(_WIN32)
        return _aligned_malloc(size, alignment);
    #else
        void *memory = NULL;
        if (posix_memalign(&memory, alignment, size) != 0) {
            return NULL;
        }
        return memory;
    #endif
    }

    static void ispcbuild_aligned_free(void *memory) {
    #if defined(_WIN32)
        _aligned_free(memory);
    #else
        free(memory);
    #endif
    }

    static void ispcbuild_free_blocks(ispcbuild_block *block) {
        while (block != NULL) {
            ispcbuild_block *next = block->next;
            ispcbuild_aligned_free(block->memory);
            free(block);
            block = next;
        }
    }

    static void ispcbuild_run_inline(ispcbuild_task_fn task, void *data,
                                     int count0, int count1, int count2) {
        int total = count0 * count1 * count2;
        int x, y, z;
        for (z = 0; z < count2; ++z) {
            for (y = 0; y < count1; ++y) {
                for (x = 0; x < count0; ++x) {
                    int task_id = x + y * count0 + z * count0 * count1;
                    task(data, 0, 1, task_id, total, x, y, z, count0, count1, count2);
                }
            }
        }
    }

    static ispcbuild_context *ispcbuild_context_for(void **handle_ptr) {
        if (*handle_ptr == NULL) {
            *handle_ptr = calloc(1, sizeof(ispcbuild_context));
        }
        return (ispcbuild_context *)*handle_ptr;
    }

    void *ISPCAlloc(void **handle_ptr, int64_t size, int32_t alignment) {
        ispcbuild_context *context = ispcbuild_context_for(handle_ptr);
        ispcbuild_block *block;
        if (context == NULL) {
            return NULL;
        }
        block = (ispcbuild_block *)malloc(sizeof(ispcbuild_block));
        if (block == NULL) {
            return NULL;
        }
        if (alignment < (int32_t)sizeof(void *)) {
            alignment = (int32_t)sizeof(void *);
        }
        block->memory = ispcbuild_aligned_alloc((size_t)size, (size_t)alignment);
        if (block->memory == NULL) {
            free(block);
            return NULL;
        }
        block->next = context->blocks;
        context->blocks = block;
        return block->memory;
    }
"""

_SERIAL_GLUE = """\
    /* Generated by ispcbuild. Serial task runtime for ISPC kernels. */
    #if !defined(_WIN32) && !defined(_POSIX_C_SOURCE)
    #define _POSIX_C_SOURCE 200112L
    #endif
    #include <stdint.h>
    #include <stdlib.h>

    typedef struct ispcbuild_context {
        struct ispcbuild_block *blocks;
    } ispcbuild_context;

""" + _GLUE_ALLOC + """
    void ISPCLaunch(void **handle_ptr, void *f, void *data, int count0, int count1, int count2) {
        (void)handle_ptr;
        ispcbuild_run_inline((ispcbuild_task_fn)f, data, count0, count1, count2);
    }

    void ISPCSync(void *handle) {
        ispcbuild_context *context = (ispcbuild_context *)handle;
        if (context == NULL) {
            return;
        }
        ispcbuild_free_blocks(context->blocks);
        free(context);
    }
"""

# Each launch starts up to one worker per online CPU; workers and the syncing
# caller claim task ids from a shared counter. Windows builds run inline.
_THREADED_GLUE = """\
    /* Generated by ispcbuild. Threaded task runtime for ISPC kernels. */
    #if !defined(_WIN32) && !defined(_POSIX_C_SOURCE)
    #define _POSIX_C_SOURCE 200112L
    #endif
    #include <stdint.h>
    #include <stdlib.h>
    #if !defined(_WIN32)
    #include <pthread.h>
    #include <unistd.h>
    #endif

    struct ispcbuild_group;

    typedef struct ispcbuild_worker {
        struct ispcbuild_group *group;
        int thread_index;
    } ispcbuild_worker;

    typedef struct ispcbuild_group {
        struct ispcbuild_group *next;
        void (*task)(void *, int, int, int, int, int, int, int, int, int, int);
        void *data;
        int count0, count1, count2, total;
        int next_task;
        int thread_count;
        int started;
    #if !defined(_WIN32)
        pthread_mutex_t lock;
        pthread_t *threads;
    #endif
        ispcbuild_worker *workers;
    } ispcbuild_group;

    typedef struct ispcbuild_context {
        struct ispcbuild_block *blocks;
        ispcbuild_group *groups;
    } ispcbuild_context;

""" + _GLUE_ALLOC + """
    static int ispcbuild_claim(ispcbuild_group *group) {
        int task_id = -1;
    #if !defined(_WIN32)
        pthread_mutex_lock(&group->lock);
    #endif
        if (group->next_task < group->total) {
            task_id = group->next_task++;
        }
    #if !defined(_WIN32)
        pthread_mutex_unlock(&group->lock);
    #endif
        return task_id;
    }

    static void ispcbuild_drain(ispcbuild_group *group, int thread_index) {
        int task_id;
        while ((task_id = ispcbuild_claim(group)) >= 0) {
            int x = task_id % group->count0;
            int y = (task_id / group->count0) % group->count1;
            int z = task_id / (group->count0 * group->count1);
            group->task(group->data, thread_index, group->thread_count, task_id, group->total,
                        x, y, z, group->count0, group->count1, group->count2);
        }
    }

    #if !defined(_WIN32)
    static void *ispcbuild_worker_main(void *arg) {
        ispcbuild_worker *worker = (ispcbuild_worker *)arg;
        ispcbuild_drain(worker->group, worker->thread_index);
        return NULL;
    }

    static int ispcbuild_worker_count(int total) {
        long cpus = 1;
    #if defined(_SC_NPROCESSORS_ONLN)
        cpus = sysconf(_SC_NPROCESSORS_ONLN);
    #endif
        if (cpus < 1) {
            cpus = 1;
        }
        return cpus < total ? (int)cpus : total;
    }

    static void ispcbuild_start_workers(ispcbuild_group *group) {
        int wanted = ispcbuild_worker_count(group->total);
        int i;
        if (wanted < 1) {
            return;
        }
        group->threads = (pthread_t *)calloc((size_t)wanted, sizeof(pthread_t));
        group->workers = (ispcbuild_worker *)calloc((size_t)wanted, sizeof(ispcbuild_worker));
        if (group->threads == NULL || group->workers == NULL) {
            return;
        }
        group->thread_count = wanted + 1;
        for (i = 0; i < wanted; ++i) {
            group->workers[i].group = group;
            group->workers[i].thread_index = i + 1;
            if (pthread_create(&group->threads[i], NULL, ispcbuild_worker_main,
                               &group->workers[i]) != 0) {
                break;
            }
            group->started++;
        }
    }
    #endif

    void ISPCLaunch(void **handle_ptr, void *f, void *data, int count0, int count1, int count2) {
        ispcbuild_context *context = ispcbuild_context_for(handle_ptr);
        ispcbuild_group *group;
        if (context == NULL) {
            ispcbuild_run_inline((ispcbuild_task_fn)f, data, count0, count1, count2);
            return;
        }
        group = (ispcbuild_group *)calloc(1, sizeof(ispcbuild_group));
        if (group == NULL) {
            ispcbuild_run_inline((ispcbuild_task_fn)f, data, count0, count1, count2);
            return;
        }
        group->task = (ispcbuild_task_fn)f;
        group->data = data;
        group->count0 = count0;
        group->count1 = count1;
        group->count2 = count2;
        group->total = count0 * count1 * count2;
        group->thread_count = 1;
    #if !defined(_WIN32)
        pthread_mutex_init(&group->lock, NULL);
        ispcbuild_start_workers(group);
    #endif
        group->next = context->groups;
        context->groups = group;
    }

    void ISPCSync(void *handle) {
        ispcbuild_context *context = (ispcbuild_context *)handle;
        ispcbuild_group *group;
        if (context == NULL) {
            return;
        }
        group = context->groups;
        while (group != NULL) {
            ispcbuild_group *next = group->next;
            int i;
            ispcbuild_drain(group, 0);
    #if !defined(_WIN32)
            for (i = 0; i < group->started; ++i) {
                pthread_join(group->threads[i], NULL);
            }
            pthread_mutex_destroy(&group->lock);
            free(group->threads);
    #else
            (void)i;
    #endif
            free(group->workers);
            free(group);
            group = next;
        }
        ispcbuild_free_blocks(context->blocks);
        free(context);
    }
"""

GLUE_SOURCES: dict[TaskingMode, str] = {
    "serial": textwrap.dedent(_SERIAL_GLUE),
    "threads": textwrap.dedent(_THREADED_GLUE),
}


def glue_source(tasking: TaskingMode) -> str:
    return GLUE_SOURCES[tasking]


class NativeToolchain(Protocol):
    """Native compiler and archiver used for glue code and the final library."""

    name: str

    def identity(self) -> str:
        """Return a stable toolchain identity folded into the link fingerprint."""

    def compile_glue(self, source: Path, output: Path) -> ProcessResult:
        """Compile the C glue *source* into the object *output*."""

    def archive(
        self,
        inputs: tuple[Path, ...],
        output: Path,
        extra_flags: tuple[str, ...],
    ) -> ProcessResult:
        """Create the static library *output* from *inputs*, in order."""


@dataclass(slots=True)
class ProcessToolchain:
    """``cc`` + ``ar`` driven through subprocesses."""

    name: str = "native"
    cc: str = "cc"
    ar: str = "ar"
    deterministic: bool = True

    def identity(self) -> str:
        return f"{self.cc}+{self.ar}"

    def compile_glue(self, source: Path, output: Path) -> ProcessResult:
        flags = ["-O2"] if sys.platform == "win32" else ["-O2", "-fPIC"]
        return self._run([self.cc, "-c", *flags, str(source), "-o", str(output)])

    def archive(
        self,
        inputs: tuple[Path, ...],
        output: Path,
        extra_flags: tuple[str, ...],
    ) -> ProcessResult:
        output.unlink(missing_ok=True)
        members: list[str] = []
        scratch = output.parent / f".{output.name}.members"
        shutil.rmtree(scratch, ignore_errors=True)
        try:
            for index, path in enumerate(inputs):
                if path.suffix not in ARCHIVE_SUFFIXES:
                    members.append(str(path))
                    continue
                expanded = self._expand_archive(path, scratch / f"{index}-{path.stem}")
                if isinstance(expanded, ProcessResult):
                    return expanded
                members.extend(expanded)
            mode = "rcsD" if self.deterministic and sys.platform.startswith("linux") else "rcs"
            return self._run([self.ar, mode, *extra_flags, str(output), *members])
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def _expand_archive(self, archive: Path, destination: Path) -> list[str] | ProcessResult:
        listing = self._run([self.ar, "t", str(archive)])
        if listing.returncode != 0:
            return listing
        destination.mkdir(parents=True, exist_ok=True)
        extracted = self._run([self.ar, "x", str(archive.resolve())], cwd=destination)
        if extracted.returncode != 0:
            return extracted
        names = [line.strip() for line in listing.stdout.splitlines() if line.strip()]
        return [str(destination / name) for name in dict.fromkeys(names)]

    def _run(self, command: list[str], cwd: Path | None = None) -> ProcessResult:
        try:
            result = subprocess.run(
                command,
                cwd=str(cwd) if cwd is not None else None,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError:
            return ProcessResult(
                returncode=127,
                stderr=f"{command[0]}: command not found",
            )
        return ProcessResult(
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )


@dataclass(slots=True)
class StubToolchain:
    """Deterministic toolchain that concatenates inputs instead of archiving."""

    name: str = "stub"
    fail_archive: ProcessResult | None = None
    invocations: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def identity(self) -> str:
        return "stub-toolchain"

    def compile_glue(self, source: Path, output: Path) -> ProcessResult:
        with self._lock:
            self.invocations.append(f"cc {source.name}")
        digest = hashlib.sha256(source.read_bytes()).hexdigest()
        output.write_text(f"stub-glue {digest}\n", encoding="utf-8")
        return ProcessResult(returncode=0)

    def archive(
        self,
        inputs: tuple[Path, ...],
        output: Path,
        extra_flags: tuple[str, ...],
    ) -> ProcessResult:
        with self._lock:
            self.invocations.append(f"ar {output.name}")
        if self.fail_archive is not None:
            return self.fail_archive
        chunks = [b"!<stub-archive>\n", " ".join(extra_flags).encode("utf-8") + b"\n"]
        for path in inputs:
            chunks.append(f"--- {path.name} ---\n".encode())
            chunks.append(path.read_bytes())
        output.write_bytes(b"".join(chunks))
        return ProcessResult(returncode=0)


def link_inputs(artifacts: Iterable[CompiledArtifact]) -> tuple[Path, ...]:
    """Objects in unit order; per-target objects follow their dispatch object."""
    inputs: list[Path] = []
    for artifact in artifacts:
        inputs.extend(artifact.objects)
    return tuple(inputs)


def ensure_unique_symbols(artifacts: Iterable[CompiledArtifact]) -> None:
    owners: dict[str, str] = {}
    for artifact in artifacts:
        for symbol in artifact.symbols:
            owner = owners.get(symbol)
            if owner is not None and owner != artifact.unit.identity:
                raise LinkError(
                    "Exported symbol is defined by more than one object.",
                    hint=(
                        "Kernels built in more than one invocation must decorate exported "
                        "names with ISPCBUILD_ISA_SUFFIX."
                    ),
                    context={
                        "symbol": symbol,
                        "first_unit": owner,
                        "second_unit": artifact.unit.identity,
                    },
                )
            owners[symbol] = artifact.unit.identity


@dataclass(slots=True)
class LinkerDriver:
    config: BuildConfig
    toolchain: NativeToolchain
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    @property
    def library_path(self) -> Path:
        return self.config.output_dir / "lib" / self.config.library_filename

    @property
    def glue_source_path(self) -> Path:
        return self.config.output_dir / "glue" / "ispcbuild_tasks.c"

    @property
    def glue_object_path(self) -> Path:
        return self.config.output_dir / "glue" / f"ispcbuild_tasks{self.config.object_suffix}"

    def write_glue_source(self) -> Path:
        path = self.glue_source_path
        path.parent.mkdir(parents=True, exist_ok=True)
        source = glue_source(self.config.tasking)
        if not path.is_file() or path.read_text(encoding="utf-8") != source:
            path.write_text(source, encoding="utf-8")
        return path

    def link(self, inputs: tuple[Path, ...]) -> Path:
        """Archive *inputs* plus the glue object into the library, in the given order."""
        source = self.write_glue_source()
        glue = self.glue_object_path
        result = self.toolchain.compile_glue(source, glue)
        if result.returncode != 0:
            raise LinkError(
                "Failed to compile the task runtime glue.",
                hint="Check that a C compiler is installed and on PATH.",
                context={
                    "unit": "glue",
                    "toolchain": self.toolchain.name,
                    "returncode": str(result.returncode),
                    "stderr": result.stderr[:2000] if result.stderr else "",
                },
            )
        ordered = (*inputs, glue)
        library = self.library_path
        library.parent.mkdir(parents=True, exist_ok=True)
        result = self.toolchain.archive(ordered, library, self.config.link_flags)
        if result.returncode != 0:
            raise LinkError(
                "Static library creation failed.",
                hint="Check the archiver output below.",
                context={
                    "library": str(library),
                    "toolchain": self.toolchain.name,
                    "inputs": " ".join(str(path) for path in ordered),
                    "returncode": str(result.returncode),
                    "stderr": result.stderr[:2000] if result.stderr else "",
                },
            )
        if not library.is_file() or library.stat().st_size == 0:
            raise ToolchainContractError(
                "Archiver reported success but produced no library.",
                context={"library": str(library), "toolchain": self.toolchain.name},
            )
        self.logger.log(
            operation="link_library",
            stage="link",
            message="Linked static library.",
            extra={"library": str(library), "inputs": len(ordered)},
        )
        return library

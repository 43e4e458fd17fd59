"""Step definitions and the backup/restore step catalogs."""

import gzip
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import click

from hostkeep.collaborators import Collaborators, generate_passphrase
from hostkeep.collaborators.databases import DUMP_FILES
from hostkeep.collaborators.packages import read_package_lists, write_package_lists
from hostkeep.utils.errors import CollaboratorError, ConfigurationError
from hostkeep.utils.files import atomic_write_text

from .job import JOB_PREFIX, BackupMode, Job

logger = logging.getLogger(__name__)

IMAGE_FOLDER = "image"
IMAGE_FILE = "disk-image.img"
SNAPSHOT_REPO = "borg_repo"

SYSTEM_MANAGERS = ("dnf", "flatpak")


@dataclass
class StepContext:
    """Everything a step's callables may use during one run."""

    job: Job
    collaborators: Collaborators
    config: Dict[str, Any] = field(default_factory=dict)
    state: Dict[str, Any] = field(default_factory=dict)
    echo: Callable[[str], None] = click.echo


def _always(ctx: StepContext) -> bool:
    return True


@dataclass(frozen=True)
class Step:
    """
    A named, independent unit of work.

    ``apply`` performs the work and may return metadata to merge into
    job.json. ``applicable`` decides whether the step is offered at all.
    Steps with ``checksum`` set get a manifest of their destination folder
    when they commit. ``target`` names what a destructive step overwrites
    and forces a typed confirmation before it runs.
    """

    id: str
    description: str
    apply: Callable[[StepContext], Optional[Dict[str, Any]]]
    sources: Tuple[str, ...] = ()
    destination: Optional[str] = None
    destructive: bool = False
    applicable: Callable[[StepContext], bool] = _always
    target: Optional[str] = None
    checksum: bool = False

    @property
    def question(self) -> str:
        return f"Do you want to {self.description}?"


class StepRegistry:
    """Ordered catalog of steps with unique identifiers."""

    def __init__(self, steps: Iterable[Step] = ()):
        self._steps: List[Step] = []
        self._index: Dict[str, Step] = {}
        self.extend(steps)

    def add(self, step: Step) -> None:
        if not step.id or any(ch.isspace() for ch in step.id):
            raise ConfigurationError(f"Invalid step identifier: {step.id!r}")
        if step.id in self._index:
            raise ConfigurationError(f"Duplicate step identifier: {step.id}")
        self._steps.append(step)
        self._index[step.id] = step

    def extend(self, steps: Iterable[Step]) -> None:
        for step in steps:
            self.add(step)

    def get(self, step_id: str) -> Optional[Step]:
        return self._index.get(step_id)

    def ids(self) -> List[str]:
        return [step.id for step in self._steps]

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._index


# (step id, description, ((source, subfolder inside the step folder), ...))
TreeSpec = Tuple[str, str, Tuple[Tuple[str, str], ...]]

TREE_STEPS: List[TreeSpec] = [
    ("etc", "system configuration files (/etc)", (("/etc", ""),)),
    ("var", "variable data (/var)", (("/var", ""),)),
    ("opt", "optional software (/opt)", (("/opt", ""),)),
    ("config", "user configuration files (~/.config)", (("~/.config", ""),)),
    ("home", "the home directory (~)", (("~", ""),)),
    ("mozilla", "Firefox profiles (~/.mozilla)", (("~/.mozilla", ""),)),
    ("chrome", "Google Chrome data (~/.config/google-chrome)", (("~/.config/google-chrome", ""),)),
    ("edge", "Microsoft Edge data (~/.config/microsoft-edge)", (("~/.config/microsoft-edge", ""),)),
    (
        "gnome_extensions",
        "GNOME Shell extensions",
        (
            ("~/.local/share/gnome-shell/extensions", ""),
            ("/usr/share/gnome-shell/extensions", "system"),
        ),
    ),
]

LOGS_STEP: TreeSpec = ("logs", "system logs (/var/log)", (("/var/log", ""),))


def _expand(path: str) -> Path:
    return Path(os.path.expanduser(path))


def _job_exclusions(tree_root: Path, job: Job, anchor: str) -> List[str]:
    """rsync patterns keeping job directories out of a copy that contains them."""
    try:
        relative = job.path.parent.resolve().relative_to(tree_root.resolve())
    except (ValueError, OSError):
        return []

    prefix = anchor
    if relative.parts:
        prefix = f"{anchor}/{relative.as_posix()}"
    return [f"{prefix}/{JOB_PREFIX}*"]


def extra_tree_specs(config: Dict[str, Any]) -> List[TreeSpec]:
    """Directory steps declared under ``extra_steps`` in the configuration."""
    specs: List[TreeSpec] = []
    for entry in config.get("extra_steps") or []:
        sources = tuple((source, "") for source in entry.get("sources", []))
        if len(sources) > 1:
            # Several sources share one step folder; keep them apart
            sources = tuple((source, f"{index}") for index, (source, _) in enumerate(sources))
        specs.append((entry["id"], entry.get("description") or entry["id"], sources))
    return specs


def _capture_tree(spec: TreeSpec) -> Step:
    step_id, description, pairs = spec

    def applicable(ctx: StepContext) -> bool:
        return any(_expand(source).exists() for source, _ in pairs)

    def apply(ctx: StepContext) -> None:
        for source, subfolder in pairs:
            source_path = _expand(source)
            if not source_path.exists():
                ctx.echo(f"  {source_path} does not exist, skipping")
                continue
            dest = ctx.job.path / step_id / subfolder if subfolder else ctx.job.path / step_id
            exclude = _job_exclusions(source_path, ctx.job, f"/{source_path.name}")
            ctx.collaborators.file_sync.sync_tree(source_path, dest, exclude=exclude)

    return Step(
        id=step_id,
        description=f"back up {description}",
        apply=apply,
        sources=tuple(source for source, _ in pairs),
        destination=step_id,
        applicable=applicable,
        checksum=True,
    )


def _restore_tree(spec: TreeSpec) -> Step:
    step_id, description, pairs = spec

    def backup_copy(job: Job, source: str, subfolder: str) -> Path:
        folder = job.path / step_id / subfolder if subfolder else job.path / step_id
        return folder / _expand(source).name

    def applicable(ctx: StepContext) -> bool:
        return any(backup_copy(ctx.job, source, subfolder).exists() for source, subfolder in pairs)

    def apply(ctx: StepContext) -> None:
        for source, subfolder in pairs:
            copy = backup_copy(ctx.job, source, subfolder)
            if not copy.exists():
                ctx.echo(f"  No backup of {source} found, skipping")
                continue
            live = _expand(source)
            exclude = _job_exclusions(live, ctx.job, "")
            ctx.collaborators.file_sync.sync_tree(copy, live, destructive=True, exclude=exclude)

    return Step(
        id=step_id,
        description=f"restore {description}",
        apply=apply,
        sources=tuple(source for source, _ in pairs),
        destination=", ".join(source for source, _ in pairs),
        destructive=True,
        applicable=applicable,
    )


def _capture_packages(ctx: StepContext) -> None:
    specs = ctx.collaborators.packages.query_installed(SYSTEM_MANAGERS)
    write_package_lists(specs, ctx.job.path / "packages", SYSTEM_MANAGERS)
    ctx.echo(f"  Recorded {len(specs)} installed packages")


def _capture_pip(ctx: StepContext) -> None:
    specs = ctx.collaborators.packages.query_installed(("pip",))
    write_package_lists(specs, ctx.job.path / "pip", ("pip",))


def _capture_databases(ctx: StepContext) -> None:
    dest = ctx.job.path / "databases"
    dest.mkdir(parents=True, exist_ok=True)
    for engine in ctx.collaborators.databases.available():
        ctx.collaborators.databases.dump(engine, dest / DUMP_FILES[engine])


def _capture_docker(ctx: StepContext) -> None:
    ctx.collaborators.containers.export(ctx.job.path / "docker")


def _restore_package_lists(folder: str, managers: Sequence[str]) -> Callable[[StepContext], None]:
    def apply(ctx: StepContext) -> None:
        specs = [spec for spec in read_package_lists(ctx.job.path / folder) if spec.manager in managers]
        if not specs:
            ctx.echo("  Package lists are empty, nothing to install")
            return
        ctx.collaborators.packages.install(specs)

    return apply


def _has_folder(folder: str) -> Callable[[StepContext], bool]:
    def applicable(ctx: StepContext) -> bool:
        return (ctx.job.path / folder).is_dir()

    return applicable


def build_backup_registry(job: Job, config: Dict[str, Any]) -> StepRegistry:
    """Capture steps for the job's mode, in execution order."""
    registry = StepRegistry()

    if job.mode == BackupMode.DISK_IMAGE:
        if not job.device:
            raise ConfigurationError(
                "Disk-image backup needs a source device",
                suggestions=["Pass --device /dev/sdX", "Run 'lsblk' to list block devices"],
            )
        device = job.device
        resumable = config.get("resumable_imaging", True)

        def image(ctx: StepContext) -> None:
            ctx.collaborators.imager.image_device(device, ctx.job.path / IMAGE_FOLDER / IMAGE_FILE, resumable=resumable)

        registry.add(
            Step(
                id="disk_image",
                description=f"create a disk image of {device}",
                apply=image,
                sources=(device,),
                destination=IMAGE_FOLDER,
                checksum=True,
            )
        )
        return registry

    if job.mode == BackupMode.SNAPSHOT:
        sources = tuple(config.get("snapshot", {}).get("sources", ["/etc", "/opt", "~"]))

        def snapshot(ctx: StepContext) -> Dict[str, Any]:
            archive_id = ctx.collaborators.snapshot_store.create(
                ctx.job.path / SNAPSHOT_REPO, [_expand(source) for source in sources]
            )
            ctx.echo(f"  Created snapshot archive {archive_id}")
            return {"snapshot_archive": archive_id}

        registry.add(
            Step(
                id="snapshot",
                description=f"create a snapshot of {', '.join(sources)}",
                apply=snapshot,
                sources=sources,
                destination=SNAPSHOT_REPO,
            )
        )
        return registry

    registry.extend(_capture_tree(spec) for spec in TREE_STEPS)
    registry.add(
        Step("packages", "record installed dnf and flatpak packages", _capture_packages, destination="packages", checksum=True)
    )
    registry.add(Step("pip", "record installed pip packages", _capture_pip, destination="pip", checksum=True))
    registry.add(
        Step(
            "databases",
            "dump local databases",
            _capture_databases,
            destination="databases",
            applicable=lambda ctx: bool(ctx.collaborators.databases.available()),
            checksum=True,
        )
    )
    registry.add(_capture_tree(LOGS_STEP))
    registry.add(
        Step(
            "docker",
            "export Docker images and containers",
            _capture_docker,
            destination="docker",
            applicable=lambda ctx: ctx.collaborators.containers.available(),
            checksum=True,
        )
    )
    registry.extend(_capture_tree(spec) for spec in extra_tree_specs(config))
    return registry


def _image_sources(folder: Path) -> Tuple[List[Path], bool]:
    """Locate the stored image: plain, gzipped, or split into parts."""
    plain = folder / IMAGE_FILE
    if plain.exists():
        return [plain], False

    compressed = folder / "disk-image.gz"
    if compressed.exists():
        return [compressed], True

    gz_parts = sorted(folder.glob("disk-image.gz.part-*"))
    if gz_parts:
        return gz_parts, True

    parts = sorted(folder.glob("disk-image.part-*"))
    if parts:
        return parts, False

    return [], False


def materialize_image(folder: Path, dest: Path) -> Path:
    """
    Produce a single raw image file from whatever form was stored.

    Args:
        folder: The job's image folder
        dest: Where to assemble the raw image when it is not stored plain

    Returns:
        Path: The raw image to write (``dest`` unless stored plain)
    """
    sources, compressed = _image_sources(folder)
    if not sources:
        raise CollaboratorError(f"No disk image found in {folder}")
    if len(sources) == 1 and not compressed:
        return sources[0]

    joined = dest.with_name(dest.name + ".joined") if compressed and len(sources) > 1 else dest
    if len(sources) > 1:
        logger.info("Joining %d image parts from %s", len(sources), folder)
        with open(joined, "wb") as out:
            for part in sources:
                with open(part, "rb") as f:
                    shutil.copyfileobj(f, out)
        source = joined
    else:
        source = sources[0]

    if compressed:
        try:
            with gzip.open(source, "rb") as f, open(dest, "wb") as out:
                shutil.copyfileobj(f, out)
        except (OSError, EOFError) as e:
            raise CollaboratorError(f"Cannot decompress disk image: {e}") from e
        finally:
            if source == joined and joined.exists():
                joined.unlink()

    return dest


def build_restore_registry(job: Job, config: Dict[str, Any]) -> StepRegistry:
    """Restore steps for the job's mode; all of them overwrite live state."""
    registry = StepRegistry()

    if job.mode == BackupMode.DISK_IMAGE:
        if not job.target:
            raise ConfigurationError(
                "Disk-image restore needs a target device",
                suggestions=["Pass --target /dev/sdX", "Run 'lsblk' to list block devices"],
            )
        device = job.target

        def write_image(ctx: StepContext) -> None:
            folder = ctx.job.path / IMAGE_FOLDER
            assembled = folder / "disk-image.restore.img"
            image = materialize_image(folder, assembled)
            try:
                ctx.collaborators.imager.write_device(image, device)
            finally:
                if image == assembled and assembled.exists():
                    assembled.unlink()

        registry.add(
            Step(
                id="disk_image",
                description=f"write the disk image to {device}",
                apply=write_image,
                destination=device,
                destructive=True,
                applicable=lambda ctx: bool(_image_sources(ctx.job.path / IMAGE_FOLDER)[0]),
                target=device,
            )
        )
        return registry

    if job.mode == BackupMode.SNAPSHOT:
        if not job.target:
            raise ConfigurationError(
                "Snapshot restore needs a target path",
                suggestions=["Pass --target /path/to/restore"],
            )
        target = job.target

        def restore_snapshot(ctx: StepContext) -> None:
            repo = ctx.job.path / SNAPSHOT_REPO
            archive_id = ctx.job.metadata.get("snapshot_archive") or ctx.collaborators.snapshot_store.latest(repo)
            if not archive_id:
                raise CollaboratorError(f"No snapshot archive found in {repo}")
            Path(target).mkdir(parents=True, exist_ok=True)
            ctx.collaborators.snapshot_store.restore(repo, archive_id, target)
            ctx.echo(f"  Restored snapshot {archive_id} to {target}")

        registry.add(
            Step(
                id="snapshot",
                description=f"restore the latest snapshot into {target}",
                apply=restore_snapshot,
                destination=target,
                destructive=True,
                applicable=_has_folder(SNAPSHOT_REPO),
                target=target,
            )
        )
        return registry

    registry.extend(_restore_tree(spec) for spec in TREE_STEPS)
    registry.add(
        Step(
            "packages",
            "reinstall dnf and flatpak packages",
            _restore_package_lists("packages", SYSTEM_MANAGERS),
            destructive=True,
            applicable=_has_folder("packages"),
        )
    )
    registry.add(
        Step(
            "pip",
            "reinstall pip packages",
            _restore_package_lists("pip", ("pip",)),
            destructive=True,
            applicable=_has_folder("pip"),
        )
    )
    registry.add(
        Step(
            "docker",
            "reload Docker images and recreate containers",
            lambda ctx: ctx.collaborators.containers.restore(ctx.job.path / "docker"),
            applicable=lambda ctx: (ctx.job.path / "docker").is_dir() and ctx.collaborators.containers.available(),
        )
    )
    registry.extend(_restore_tree(spec) for spec in extra_tree_specs(config))
    return registry


def _compress(ctx: StepContext) -> None:
    ctx.collaborators.archiver.archive(ctx.job.path, ctx.job.archive_path)
    ctx.echo(f"  Archive written to {ctx.job.archive_path}")


def _encrypt(ctx: StepContext) -> None:
    job = ctx.job
    if not job.archive_path.exists():
        # Encrypted and cleaned up before the journal line was written
        ctx.echo(f"  {job.encrypted_path} already exists")
        return

    passphrase = ctx.state.get("passphrase")
    if not passphrase:
        passphrase = generate_passphrase()
        ctx.state["passphrase"] = passphrase
        ctx.echo(f"  Generated encryption passphrase: {passphrase}")
        ctx.echo("  Store it somewhere safe; the backup cannot be restored without it.")

    ctx.collaborators.cipher.encrypt(job.archive_path, job.encrypted_path, passphrase)
    if ctx.config.get("save_passphrase", True):
        atomic_write_text(job.passphrase_file, passphrase + "\n", mode=0o600)
        ctx.echo(f"  Passphrase saved to {job.passphrase_file}")

    job.archive_path.unlink()
    ctx.echo(f"  Encrypted archive written to {job.encrypted_path}")


def build_finalize_registry(job: Job, config: Dict[str, Any]) -> StepRegistry:
    """The compress and encrypt pseudo-steps that seal a selective or disk-image job."""
    registry = StepRegistry()
    if job.mode == BackupMode.SNAPSHOT:
        return registry

    if config.get("offer_compress", True):
        registry.add(
            Step(
                "compress",
                f"compress the backup into {job.archive_path.name}",
                _compress,
                sources=(str(job.path),),
                destination=str(job.archive_path),
                applicable=lambda ctx: ctx.job.path.is_dir(),
            )
        )

    if config.get("offer_encrypt", True):
        registry.add(
            Step(
                "encrypt",
                f"encrypt the archive into {job.encrypted_path.name}",
                _encrypt,
                sources=(str(job.archive_path),),
                destination=str(job.encrypted_path),
                applicable=lambda ctx: ctx.job.archive_path.exists() or ctx.job.encrypted_path.exists(),
            )
        )

    return registry

"""End-to-end provisioning of one device from one image.

Stages (in order):
    preflight     root, option, image and device checks; workspace and
                  stale-mapping conflict checks. Nothing is created.
    workspace     private mount tree, image loop-mounted read-only
    metadata      /auidata read and checked (v2 only)
    layout        partition sizes computed and checked against capacity
    partition     fresh GPT, three partitions        (skipped in raw mode)
    format        filesystems, LUKS container        (skipped in raw mode)
    mount         partitions mounted in the workspace (skipped in raw mode)
    populate      image content copied               (skipped in raw mode)
    encrypt-boot  initramfs + boot entries updated   (only when encrypting)
    release       flush, unmount, remove workspace, close mapping
    raw-write     dd of the whole image              (raw mode only)
    bootloader    syslinux + protective MBR boot code (skipped in raw mode)

Every stage raises a ProvisioningError subclass. ``run()`` records which
stage failed and performs one cleanup pass whenever this run still owns a
mount, a directory or an open mapping.
"""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Callable, Optional

from live_usb_maker.config.settings import (
    DEFAULT_MAPPED_NAME,
    DEFAULT_WORKSPACE_ROOT,
    get_setting,
)
from live_usb_maker.domain.models import (
    ProvisioningResult,
    ProvisioningSession,
    ProvisionOptions,
    WorkspaceLayout,
)
from live_usb_maker.logging import EventLogger, LoggerFactory, operation_context
from live_usb_maker.storage import (
    bootloader,
    encryption,
    format as format_ops,
    image as image_ops,
    iso,
    partitioning,
    populate,
    sizing,
    validation,
)
from live_usb_maker.storage.devices import mapped_device_exists, read_target_device
from live_usb_maker.storage.exceptions import (
    DeviceValidationError,
    EncryptionSetupError,
    MountError,
    ProvisioningError,
)
from live_usb_maker.storage.mount import MountCoordinator


ProgressCallback = Callable[[list[str], Optional[float]], None]


class ProvisioningOrchestrator:
    """Runs the provisioning stages for one image/device pair."""

    def __init__(
        self,
        image_path: Path,
        device_path: str,
        options: Optional[ProvisionOptions] = None,
        progress_callback: Optional[ProgressCallback] = None,
        workspace_root: Optional[Path] = None,
    ) -> None:
        self.image_path = Path(image_path)
        self.device_path = device_path
        self.options = options or ProvisionOptions()
        self.progress_callback = progress_callback
        self.job_id = f"provision-{uuid.uuid4().hex[:8]}"
        self.log = LoggerFactory.for_provision(self.job_id, device=device_path)
        root = workspace_root or get_setting("workspace_root", DEFAULT_WORKSPACE_ROOT)
        self.layout = WorkspaceLayout(Path(root))
        self.coordinator = MountCoordinator(self.layout, encrypt=self.options.encrypt)
        self.session: Optional[ProvisioningSession] = None

    def stages(self) -> list[tuple[str, Callable[[], None]]]:
        stages = [
            ("preflight", self._preflight),
            ("workspace", self._create_workspace),
            ("metadata", self._read_metadata),
            ("layout", self._compute_layout),
        ]
        if self.options.raw_copy:
            return stages + [
                ("release", self._release),
                ("raw-write", self._write_raw),
            ]
        stages += [
            ("partition", self._partition),
            ("format", self._format),
            ("mount", self._mount_partitions),
            ("populate", self._populate),
        ]
        if self.options.encrypt:
            stages.append(("encrypt-boot", self._configure_encrypted_boot))
        return stages + [
            ("release", self._release),
            ("bootloader", self._install_bootloader),
        ]

    def run(self) -> ProvisioningResult:
        stage = None
        try:
            for stage, step in self.stages():
                with operation_context(stage, job_id=self.job_id):
                    step()
        except ProvisioningError as error:
            cleanup_ran = self._handle_failure(stage, error)
            return ProvisioningResult(
                success=False, failed_stage=stage, error=error, cleanup_ran=cleanup_ran
            )
        except Exception:
            self.log.exception(f"Unexpected failure in stage {stage}")
            self._cleanup()
            raise
        except BaseException:
            # Ctrl-C still must not leave mounts or an open mapping behind
            self.log.warning(f"Interrupted during stage {stage}")
            if self.coordinator.has_state or self._mapping_held():
                self._cleanup()
            raise
        self.log.success(f"{self.image_path.name} written to {self.device_path}")
        return ProvisioningResult(success=True)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _preflight(self) -> None:
        validation.validate_options(self.options)
        validation.require_root()
        validation.validate_image_file(self.image_path)
        device = read_target_device(self.device_path)
        validation.validate_image_not_on_device(self.image_path, device)
        validation.validate_target_device(device)
        if self.options.encrypt:
            encryption.ensure_no_stale_mapping(
                get_setting("mapped_name", DEFAULT_MAPPED_NAME)
            )
        self.coordinator.check_conflicts()
        self.session = ProvisioningSession(
            image_path=self.image_path,
            device=device,
            options=self.options,
            workspace=self.layout,
            job_id=self.job_id,
        )
        self.log.info(f"Target: {device.format_label()}")

    def _create_workspace(self) -> None:
        self.coordinator.create()
        self.coordinator.mount_image(self.image_path)

    def _read_metadata(self) -> None:
        self.session.image = image_ops.read_source_image(
            self.image_path, self.layout.image
        )

    def _compute_layout(self) -> None:
        sizes = sizing.calculate_partition_sizes(
            self.session.device.size_bytes,
            self.session.image.size_bytes,
            boot_size=self.options.boot_size,
            persistent_size=self.options.persistent_size,
            raw_copy=self.options.raw_copy,
            device=self.session.device.path,
        )
        if not sizes.raw_copy:
            self.session.plan = partitioning.build_plan(sizes)

    def _revalidate_device(self) -> None:
        """Re-read the target right before the first destructive call."""
        current = read_target_device(self.device_path)
        validation.validate_target_device(current)
        if current.size_bytes != self.session.device.size_bytes:
            raise DeviceValidationError(
                self.device_path, "device changed since the layout was computed"
            )
        self.session.device = current

    def _partition(self) -> None:
        self._revalidate_device()
        device_path = self.session.device.path
        partitioning.write_partition_table(device_path, self.session.plan)
        partitioning.wait_for_partitions(device_path, len(self.session.plan.partitions))

    def _format(self) -> None:
        format_ops.format_partitions(self.session)

    def _mount_partitions(self) -> None:
        self.coordinator.mount_partitions(
            self.session.partition_node(1),
            self.session.partition_node(2),
            self.session.persistent_node,
        )

    def _populate(self) -> None:
        image = self.session.image
        populate.populate_live_partition(self.layout.image, self.layout.live)
        populate.populate_boot_partition(
            self.layout.image, self.layout.boot, image.install_dir
        )
        populate.populate_persistence(self.layout.image, self.layout.persistence, image)

    def _configure_encrypted_boot(self) -> None:
        encryption.configure_boot_for_encryption(self.session, self.coordinator)

    def _release(self) -> None:
        unreleased = self.coordinator.teardown()
        if unreleased:
            raise MountError(
                ", ".join(unreleased), str(self.layout.root), "could not unmount"
            )
        context = self.session.encryption
        if context is not None and context.is_open:
            if not encryption.close_volume(context.mapped_name):
                raise EncryptionSetupError(
                    f"Could not close mapping {context.mapped_name}",
                    device=self.session.partition_node(3),
                )
            context.mapped_path = None

    def _write_raw(self) -> None:
        self._revalidate_device()
        iso.write_raw_image(
            self.image_path,
            self.session.device.path,
            progress_callback=self.progress_callback,
        )

    def _install_bootloader(self) -> None:
        bootloader.install_bootloader(
            self.session.device.path,
            self.session.partition_node(2),
            self.session.image.install_dir,
        )

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _mapping_held(self) -> bool:
        context = self.session.encryption if self.session else None
        if context is None:
            return False
        return context.is_open or mapped_device_exists(context.mapped_name)

    def _handle_failure(self, stage: Optional[str], error: ProvisioningError) -> bool:
        self.log.error(f"Provisioning failed at {stage}: {error}")
        if not (
            error.requires_cleanup
            or self.coordinator.has_state
            or self._mapping_held()
        ):
            return False
        self._cleanup()
        return True

    def _cleanup(self) -> None:
        """Unmount and remove the workspace, then close the mapping."""
        unreleased = self.coordinator.teardown()
        mapping_closed = None
        if self._mapping_held():
            context = self.session.encryption
            mapping_closed = encryption.close_volume(context.mapped_name)
            if mapping_closed:
                context.mapped_path = None
        EventLogger.log_cleanup(self.log, unreleased, mapping_closed)

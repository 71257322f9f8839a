"""Periodic network checkpoints written during training."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from nnopt.neural.protocols import Network


logger = logging.getLogger(__name__)


class NetworkCheckpointer:
    """
    Saves the network every ``save_period`` epochs.

    Each write goes to a temporary file in the target directory which is then
    renamed over the destination, so a reader never sees a half-written file.
    A failed write is logged and training continues.
    """

    def __init__(self, file_name: str | Path, save_period: int):
        """
        Initialize the checkpointer.

        Args:
            file_name: Destination of the saved network
            save_period: Epochs between two checkpoints
        """
        if save_period < 1:
            raise ValueError("save_period must be at least 1")

        self.file_name = Path(file_name)
        self.save_period = save_period

    def should_save(self, epoch: int) -> bool:
        return epoch != 0 and epoch % self.save_period == 0

    def maybe_save(self, network: Network, epoch: int) -> bool:
        """Save ``network`` if ``epoch`` is a checkpoint epoch.

        Returns:
            True if a checkpoint was written
        """
        if not self.should_save(epoch):
            return False
        return self.save(network, epoch)

    def save(self, network: Network, epoch: int) -> bool:
        directory = self.file_name.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, temporary = tempfile.mkstemp(
                dir=directory, prefix=f".{self.file_name.name}.", suffix=".tmp"
            )
            os.close(fd)
            try:
                network.save(temporary)
                os.replace(temporary, self.file_name)
            finally:
                if os.path.exists(temporary):
                    os.remove(temporary)
        except Exception:
            logger.exception(
                f"Epoch {epoch}: failed to save checkpoint to {self.file_name}"
            )
            return False

        logger.debug(f"Epoch {epoch}: checkpoint saved to {self.file_name}")
        return True

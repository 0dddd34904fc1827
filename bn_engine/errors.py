from typing import Optional

from torch import Tensor


class PreconditionViolation(ValueError):
    """A call was rejected before any work was enqueued.

    Raised for mismatched running statistics, inference without running
    statistics, missing saved statistics in training backward, and shape
    mismatches between the input and its per-channel tensors.
    """


def check_input(input: Tensor, name: str = "input") -> None:
    if input.dim() < 2:
        raise PreconditionViolation(
            f"{name} must have at least 2 dimensions (dim 1 is channels), got shape {tuple(input.shape)}"
        )


def check_per_channel(t: Optional[Tensor], name: str, channels: int) -> None:
    if t is not None and (t.dim() != 1 or t.numel() != channels):
        raise PreconditionViolation(
            f"{name} must be 1-D with {channels} elements, got shape {tuple(t.shape)}"
        )


def check_running_stats(running_mean: Optional[Tensor], running_var: Optional[Tensor]) -> bool:
    """Validate the running pair and return whether it is present."""
    has_running_mean = running_mean is not None
    has_running_var = running_var is not None
    if has_running_mean != has_running_var:
        raise PreconditionViolation(
            "running_mean and running_var must either both be None or neither be None"
        )
    if has_running_mean and running_mean.dtype != running_var.dtype:
        raise PreconditionViolation(
            f"running_mean and running_var must have the same dtype, "
            f"got {running_mean.dtype} and {running_var.dtype}"
        )
    return has_running_mean

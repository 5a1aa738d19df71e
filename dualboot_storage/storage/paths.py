"""Partition device node naming."""


def partition_path(disk: str, index: int) -> str:
    """Return the device node of partition ``index`` on ``disk``.

    Disks whose name ends in a digit (nvme0n1, mmcblk0, loop0) separate the
    partition number with ``p``; the rest (sda, vdb) append it directly.

    >>> partition_path("/dev/sda", 2)
    '/dev/sda2'
    >>> partition_path("/dev/nvme0n1", 1)
    '/dev/nvme0n1p1'
    """
    if index < 1:
        raise ValueError(f"Partition index must be >= 1, got {index}")
    separator = "p" if disk[-1:].isdigit() else ""
    return f"{disk}{separator}{index}"

"""
Runtime settings for the batch norm engine.

Values are read from the environment once at import. Callers (and tests)
may reassign the module attributes afterwards; every kernel launcher reads
them at call time.
"""

import os

# Largest element count / element offset addressable with 32-bit indices.
MAX_32BIT_INDEX = int(os.environ.get("BN_ENGINE_MAX_32BIT_INDEX", 2**31 - 1))

# Set to 1 to route CUDA tensors through the torch operator paths only.
DISABLE_TRITON = os.environ.get("BN_ENGINE_DISABLE_TRITON", "0") == "1"

# Elements (Contiguous) or rows (ChannelsLast) processed per Triton loop step.
BLOCK_SIZE = int(os.environ.get("BN_ENGINE_BLOCK_SIZE", 1024))

# Channels handled by one program of the channels-last Triton kernels;
# rounded up to a power of two at launch.
CHANNEL_BLOCK = int(os.environ.get("BN_ENGINE_CHANNEL_BLOCK", 32))


def max_32bit_index() -> int:
    return MAX_32BIT_INDEX


def triton_enabled() -> bool:
    return not DISABLE_TRITON

import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bn_engine import config
from bn_engine.layout import Impl, choose_impl

LAYOUTS = {
    "contiguous": Impl.Contiguous,
    "channels_last": Impl.ChannelsLast,
    "general": Impl.General,
}


def to_layout(x, layout):
    """Same values as the 4-D tensor ``x``, stored in the requested layout."""
    if layout == "contiguous":
        out = x.contiguous()
    elif layout == "channels_last":
        out = x.contiguous(memory_format=torch.channels_last)
    else:
        # swap the last two dims in memory only
        out = x.transpose(-1, -2).contiguous().transpose(-1, -2)
    assert choose_impl(out) is LAYOUTS[layout]
    return out


@pytest.fixture(autouse=True)
def _restore_config():
    saved = (config.MAX_32BIT_INDEX, config.DISABLE_TRITON, config.BLOCK_SIZE, config.CHANNEL_BLOCK)
    yield
    config.MAX_32BIT_INDEX, config.DISABLE_TRITON, config.BLOCK_SIZE, config.CHANNEL_BLOCK = saved


@pytest.fixture
def device():
    return "cuda" if torch.cuda.is_available() else "cpu"

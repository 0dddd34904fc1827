import torch

from bn_engine import config
from bn_engine.layout import (
    Impl,
    IndexWidth,
    acc_type,
    as_rows,
    can_use_32bit_indexing,
    choose_impl,
    index_width,
    split_32bit,
)


def test_channel_first_packed_is_contiguous():
    x = torch.randn(2, 3, 4, 5)
    assert choose_impl(x) is Impl.Contiguous
    assert choose_impl(torch.randn(2, 3, 7)) is Impl.Contiguous


def test_channels_last_layouts():
    assert choose_impl(torch.randn(2, 3, 4, 5).to(memory_format=torch.channels_last)) is Impl.ChannelsLast
    assert choose_impl(torch.randn(2, 3, 2, 2, 2).to(memory_format=torch.channels_last_3d)) is Impl.ChannelsLast


def test_2d_and_trailing_singletons_are_channels_last():
    # channel stride is 1 in both cases
    assert choose_impl(torch.randn(8, 3)) is Impl.ChannelsLast
    assert choose_impl(torch.randn(4, 3, 1, 1)) is Impl.ChannelsLast


def test_strided_input_is_general():
    x = torch.randn(2, 3, 4, 5)
    assert choose_impl(x.transpose(2, 3)) is Impl.General
    assert choose_impl(x[:, :, ::2]) is Impl.General
    assert choose_impl(torch.randn(3, 8).t()) is Impl.General


def test_large_tensor_degrades_to_general(monkeypatch):
    x = torch.randn(4, 3, 2, 2)
    assert index_width(x) is IndexWidth.NARROW
    monkeypatch.setattr(config, "MAX_32BIT_INDEX", 40)
    assert not can_use_32bit_indexing(x)
    assert index_width(x) is IndexWidth.WIDE
    assert choose_impl(x) is Impl.General


def test_auxiliary_tensors_must_agree():
    x = torch.randn(2, 3, 4, 5)
    x_cl = x.to(memory_format=torch.channels_last)
    assert choose_impl(x, x.clone()) is Impl.Contiguous
    assert choose_impl(x, x_cl) is Impl.General
    assert choose_impl(x_cl, x) is Impl.General


def test_per_channel_params_must_be_contiguous():
    x = torch.randn(2, 3, 4, 5)
    weight = torch.randn(6)[::2]
    assert choose_impl(x, params=(None, torch.randn(3))) is Impl.Contiguous
    assert choose_impl(x, params=(weight,)) is Impl.General


def test_split_32bit_covers_every_element_once(monkeypatch):
    x = torch.randn(4, 3, 4, 4)
    assert len(list(split_32bit(x))) == 1

    monkeypatch.setattr(config, "MAX_32BIT_INDEX", 10)
    hits = torch.zeros_like(x)
    pieces = list(split_32bit(x))
    for index in pieces:
        assert index[1] == slice(0, 3)  # channels are never cut
        hits[index] += 1
    assert len(pieces) > 1
    assert torch.equal(hits, torch.ones_like(x))


def test_acc_type():
    assert acc_type(torch.float16) == torch.float32
    assert acc_type(torch.bfloat16) == torch.float32
    assert acc_type(torch.float32) == torch.float32
    assert acc_type(torch.float64) == torch.float64


def test_as_rows_is_a_view():
    x = torch.randn(2, 3, 4, 5).to(memory_format=torch.channels_last)
    rows = as_rows(x)
    assert rows.shape == (2 * 4 * 5, 3)
    assert rows.data_ptr() == x.data_ptr()
    assert torch.equal(rows, x.permute(0, 2, 3, 1).reshape(-1, 3))

"""
Tests for libragen.time_estimate
"""

from __future__ import annotations

import pytest


def _info(model="Intel(R) Xeon(R) CPU @ 2.20GHz", cores=8, plat="linux", arch="x64"):
    from libragen.time_estimate import SystemInfo
    return SystemInfo(model, cores, plat, arch)


@pytest.mark.parametrize("seconds,expected", [
    (0, "0s"),
    (42.4, "42s"),
    (60, "1m"),
    (185, "3m 5s"),
    (119.7, "2m"),
    (3600, "1h"),
    (7800, "2h 10m"),
])
def test_format_duration(seconds, expected):
    from libragen.time_estimate import format_duration
    assert format_duration(seconds) == expected


@pytest.mark.parametrize("n,expected", [
    (512, "512 B"),
    (1536, "1.5 KB"),
    (5 * 1024 * 1024, "5.0 MB"),
    (3 * 1024 ** 3, "3.0 GB"),
])
def test_format_bytes(n, expected):
    from libragen.time_estimate import format_bytes
    assert format_bytes(n) == expected


@pytest.mark.parametrize("info_kwargs,rate", [
    ({"cores": 16}, 30),
    ({"cores": 8}, 22),
    ({"cores": 4}, 15),
    ({"cores": 2}, 10),
    ({"arch": "arm64", "cores": 8}, 20),
    ({"arch": "arm64", "cores": 4}, 8),
    ({"arch": "riscv64", "cores": 4}, 15),
    ({"model": "Apple M3 Max", "cores": 16, "plat": "darwin", "arch": "arm64"}, 60),
    ({"model": "Apple M1", "cores": 8, "plat": "darwin", "arch": "arm64"}, 40),
    ({"model": "Apple M9", "cores": 8, "plat": "darwin", "arch": "arm64"}, 40),
])
def test_baseline_rates(info_kwargs, rate):
    from libragen.time_estimate import baseline_chunks_per_second
    assert baseline_chunks_per_second(_info(**info_kwargs)) == rate


def test_estimate_embedding_time():
    from libragen.time_estimate import estimate_embedding_time
    est = estimate_embedding_time(2200, _info(cores=8))
    assert est.chunks_per_second == 22
    assert est.estimated_seconds == pytest.approx(100.0)
    assert est.formatted_time == "1m 40s"


def test_system_info_arch_is_normalized():
    from libragen.time_estimate import get_system_info
    info = get_system_info()
    assert info.cpu_cores >= 1
    assert info.arch not in ("x86_64", "amd64", "aarch64")


def test_format_system_info_strips_marketing():
    from libragen.time_estimate import format_system_info
    text = format_system_info(_info())
    assert "(R)" not in text
    assert "@" not in text
    assert "8" in text

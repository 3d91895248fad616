"""
Tests for the memory tuning file renderers.
"""

import shlex

from minipc.memory import (
    render_zram_conf, render_sysctl_conf, render_earlyoom_defaults, render_oom_protect, earlyoom_args,
    SYSCTL_SETTINGS, USER_OOM_SCORE_ADJUST,
)


class TestZram:
    def test_default_multiplier(self):
        text = render_zram_conf()
        assert text.startswith("[zram0]\n")
        assert "zram-size = ram * 4\n" in text
        assert "compression-algorithm = zstd\n" in text

    def test_custom_multiplier(self):
        assert "zram-size = ram * 2\n" in render_zram_conf(2)


class TestSysctl:
    def test_every_setting_rendered(self):
        text = render_sysctl_conf()
        for key, value in SYSCTL_SETTINGS:
            assert f"{key} = {value}\n" in text
        assert "vm.swappiness = 150\n" in text


class TestEarlyoom:
    def test_args(self):
        words = shlex.split(earlyoom_args())
        assert words[:6] == ["-r", "60", "-m", "4", "-s", "10"]
        prefer = words[words.index("--prefer") + 1]
        avoid = words[words.index("--avoid") + 1]
        assert prefer == "(^|/)node$|(^|/)bun$"
        assert avoid.startswith("(^|/)qemu-system|(^|/)cloudflared|")

    def test_defaults_file(self):
        text = render_earlyoom_defaults()
        assert 'EARLYOOM_ARGS="-r 60 -m 4 -s 10 ' in text
        assert text.endswith('"\n')


class TestOomProtect:
    def test_dropin(self):
        assert render_oom_protect() == f"[Service]\nOOMScoreAdjust={USER_OOM_SCORE_ADJUST}\n"
        assert USER_OOM_SCORE_ADJUST < 0

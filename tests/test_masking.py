"""
Tests for audit IP masking.
"""

from __future__ import annotations

import pytest

from rankbot.audit.masking import mask_ip


class TestMaskIp:
    @pytest.mark.parametrize(
        "raw, masked",
        [
            ("203.0.113.55", "203.0.113.xxx"),
            ("2001:db8:1:2:3:4:5:6", "2001:db8:1:2::xxxx"),
            ("2001:0db8:0000:0002:0003:0004:0005:0006", "2001:db8:0:2::xxxx"),
            ("::ffff:203.0.113.55", "::ffff:203.0.113.xxx"),
            ("[2001:db8:1:2::1]", "2001:db8:1:2::xxxx"),
            ("fe80::1%eth0", "fe80:0:0:0::xxxx"),
        ],
    )
    def test_masks_known_forms(self, raw, masked):
        assert mask_ip(raw) == masked

    def test_missing_address(self):
        assert mask_ip(None) is None
        assert mask_ip("") is None

    def test_garbage_is_replaced(self):
        assert mask_ip("not-an-ip") == "unknown"
        assert mask_ip("999.1.1.1") == "unknown"

"""Tests for the chip registry and connection config."""

import pytest

from device_flasher.config import ConnectionConfig
from device_flasher.models import detect_chip, get_chip, list_chips


class TestRegistry:
    """Chip profiles and name matching."""

    def test_all_chips_listed(self):
        """Every supported family is registered."""
        assert list_chips() == ["ESP32", "ESP32-C3", "ESP32-C6", "ESP32-H2", "ESP32-S2", "ESP32-S3"]

    def test_bootloader_offsets(self):
        """Original ESP32 and S2 boot from 0x1000, newer chips from 0x0."""
        assert get_chip("ESP32").bootloader_offset == 0x1000
        assert get_chip("ESP32-S3").bootloader_offset == 0x0

    def test_detect_variants(self):
        """Reported names match regardless of case, punctuation, or package suffix."""
        assert detect_chip("esp32s3").name == "ESP32-S3"
        assert detect_chip("ESP32-S3 (QFN56)").name == "ESP32-S3"
        assert detect_chip("ESP8266") is None
        assert detect_chip(None) is None

    def test_to_dict(self):
        """Profiles serialize to plain types."""
        data = get_chip("ESP32-C3").to_dict()
        assert data["name"] == "ESP32-C3"
        assert isinstance(data["flash_sizes"], list)


class TestConnectionConfig:
    """Validation and overrides."""

    def test_defaults(self):
        """Defaults match the usual ESP32 bootloader settings."""
        config = ConnectionConfig()
        assert config.baudrate == 115200
        assert config.timeout == 0.5
        assert config.handshake_retries == 5
        assert config.chunk_size == 4096

    def test_invalid_values(self):
        """Nonsensical values are rejected."""
        with pytest.raises(ValueError):
            ConnectionConfig(baudrate=0)
        with pytest.raises(ValueError):
            ConnectionConfig(handshake_retries=0)
        with pytest.raises(ValueError):
            ConnectionConfig(chunk_size=0x10000)

    def test_with_overrides_skips_none(self):
        """None leaves a field unchanged."""
        config = ConnectionConfig(port="/dev/ttyUSB0").with_overrides(port=None, baudrate=460800)
        assert config.port == "/dev/ttyUSB0"
        assert config.baudrate == 460800

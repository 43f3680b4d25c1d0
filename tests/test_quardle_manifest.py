"""Tests for quardle/manifest.py module."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from quark.config import DEFAULT_KERNEL_CMDLINE
from quark.errors import FilesystemError, SerializationError
from quark.quardle.manifest import (
    QuarkManifest,
    build_manifest,
    manifest_to_json,
    parse_manifest,
    read_manifest,
    write_manifest,
)
from quark.types import BuildRequest


def make_request(offline: bool) -> BuildRequest:
    """Create a demo build request."""
    return BuildRequest(
        quardle="demo",
        image="https://example.com/alpine.tar.gz",
        offline=offline,
        kernel_cmdline=DEFAULT_KERNEL_CMDLINE,
    )


class TestBuildManifest:
    """Tests for build_manifest."""

    def test_offline_manifest(self) -> None:
        """Offline manifests should point at the embedded bundle."""
        manifest = build_manifest(make_request(offline=True))

        assert manifest.quardle == "demo"
        assert manifest.kernel == "vmlinux.bin"
        assert manifest.initramfs == "initramfs.img"
        assert manifest.kernel_cmdline == DEFAULT_KERNEL_CMDLINE
        assert manifest.kaps == "/opt/kaps"
        assert manifest.offline is True
        assert manifest.bundle == "/ctr-bundle/"

    def test_online_manifest(self) -> None:
        """Online manifests should carry no bundle."""
        manifest = build_manifest(make_request(offline=False))
        assert manifest.offline is False
        assert manifest.bundle is None


class TestManifestValidation:
    """Tests for the offline/bundle rule."""

    def test_offline_requires_bundle(self) -> None:
        """offline=true without a bundle should be rejected."""
        data = build_manifest(make_request(offline=True)).model_dump()
        data["bundle"] = None
        with pytest.raises(ValidationError, match="bundle is required"):
            QuarkManifest.model_validate(data)

    def test_online_forbids_bundle(self) -> None:
        """offline=false with a bundle should be rejected."""
        data = build_manifest(make_request(offline=False)).model_dump()
        data["bundle"] = "/ctr-bundle/"
        with pytest.raises(ValidationError, match="bundle must be null"):
            QuarkManifest.model_validate(data)

    def test_unknown_fields_rejected(self) -> None:
        """Extra keys should not be accepted."""
        data = build_manifest(make_request(offline=False)).model_dump()
        data["vcpus"] = 2
        with pytest.raises(ValidationError):
            QuarkManifest.model_validate(data)


class TestSerialization:
    """Tests for manifest JSON encoding and decoding."""

    def test_json_keys(self) -> None:
        """The JSON document should carry every manifest field."""
        content = manifest_to_json(build_manifest(make_request(offline=True)))

        assert content.endswith("\n")
        data = json.loads(content)
        assert set(data) == {
            "quardle",
            "kernel",
            "initramfs",
            "kernel_cmdline",
            "image",
            "kaps",
            "offline",
            "bundle",
        }

    def test_online_bundle_is_null(self) -> None:
        """Online manifests should serialize bundle as null."""
        data = json.loads(manifest_to_json(build_manifest(make_request(False))))
        assert data["bundle"] is None

    def test_parse_invalid(self) -> None:
        """Malformed JSON should raise SerializationError."""
        with pytest.raises(SerializationError):
            parse_manifest("{not json")

    def test_write_and_read(self, tmp_path: Path) -> None:
        """A written manifest should read back equal."""
        manifest = build_manifest(make_request(offline=True))
        path = write_manifest(manifest, tmp_path / "quark.json")
        assert read_manifest(path) == manifest

    def test_read_missing(self, tmp_path: Path) -> None:
        """Reading a missing manifest should raise FilesystemError."""
        with pytest.raises(FilesystemError):
            read_manifest(tmp_path / "quark.json")

"""Tests for builds/artifacts.py module.

Tests artifact classification, packaging, manifest generation and streaming.
"""

import gzip
import hashlib
import json

import pytest

from armbian_imagegen.builds.artifacts import (
    BUILD_LOG,
    CONFIG_JSON,
    GZIP_CONTENT_TYPE,
    MANIFEST,
    artifact_url,
    classify_artifact,
    content_type_for,
    find_artifact,
    generate_manifest,
    iter_artifact_bytes,
    make_artifact,
    package_artifacts,
)
from armbian_imagegen.builds.injector import PACKAGE_DIR_NAME
from armbian_imagegen.errors import IntegrityFailure
from armbian_imagegen.types import ArtifactKind

IMAGE_BYTES = b"CONFIGURED-IMAGE" * 64


@pytest.fixture
def build_tree(tmp_path):
    """A work directory with generated files and a configured image."""
    work = tmp_path / "work"
    output = work / "output"
    output.mkdir(parents=True)
    (work / CONFIG_JSON).write_text('{"name": "x"}')
    (work / "armbian-config-auto.sh").write_text("#!/bin/bash\n")
    (work / "user-data").write_text("#cloud-config\n")
    (work / "meta-data").write_text("instance-id: x\n")
    image = output / "BBOS_Armbian_b1.img"
    image.write_bytes(IMAGE_BYTES)
    return work, output, image


class TestClassifyArtifact:
    """Tests for classify_artifact function."""

    def test_kinds(self):
        """Names map to their artifact kind."""
        assert classify_artifact("BBOS_Armbian_b1.img") == ArtifactKind.IMAGE
        assert classify_artifact("BBOS_Armbian_b1.img.sha256") == ArtifactKind.CHECKSUM
        assert classify_artifact("build.log") == ArtifactKind.LOG
        assert classify_artifact("packages.txt") == ArtifactKind.PACKAGES
        assert classify_artifact("config.json") == ArtifactKind.CONFIG
        assert classify_artifact("bbos-config/customize.sh") == ArtifactKind.CONFIG

    def test_case_insensitive(self):
        """Should be case insensitive."""
        assert classify_artifact("IMAGE.IMG") == ArtifactKind.IMAGE


class TestContentType:
    """Tests for content_type_for."""

    def test_content_types(self):
        """Each kind has its content type; text configs are text/plain."""
        assert content_type_for(ArtifactKind.IMAGE) == "application/octet-stream"
        assert content_type_for(ArtifactKind.LOG) == "text/plain"
        assert content_type_for(ArtifactKind.CHECKSUM) == "text/plain"
        assert content_type_for(ArtifactKind.CONFIG, "config.json") == "application/json"
        assert content_type_for(ArtifactKind.CONFIG, "user-data") == "text/plain"
        assert content_type_for(ArtifactKind.CONFIG, "bbos-config/DEPLOYMENT.md") == "text/plain"


class TestMakeArtifact:
    """Tests for make_artifact."""

    def test_fields(self, tmp_path):
        """Artifacts carry size, digest and a retrieval locator."""
        path = tmp_path / "build.log"
        path.write_bytes(b"hello\n")

        artifact = make_artifact(path, "b1")

        assert artifact.name == "build.log"
        assert artifact.kind == ArtifactKind.LOG
        assert artifact.size_bytes == 6
        assert artifact.sha256 == hashlib.sha256(b"hello\n").hexdigest()
        assert artifact.url == artifact_url("b1", "build.log")

    def test_empty_file(self, tmp_path):
        """Empty files are never artifacts."""
        path = tmp_path / "empty.img"
        path.touch()
        with pytest.raises(IntegrityFailure):
            make_artifact(path, "b1")


class TestPackageArtifacts:
    """Tests for package_artifacts."""

    def test_order_and_contents(self, build_tree):
        """Image first, generated files next, checksum, log and manifest last."""
        work, output, image = build_tree

        artifacts = package_artifacts(image, work, output, "b1", log_lines=["step one"])
        names = [a.name for a in artifacts]

        assert names == [
            "BBOS_Armbian_b1.img",
            CONFIG_JSON,
            "armbian-config-auto.sh",
            "user-data",
            "meta-data",
            "BBOS_Armbian_b1.img.sha256",
            BUILD_LOG,
            MANIFEST,
        ]
        assert all(a.size_bytes > 0 for a in artifacts)
        assert (output / BUILD_LOG).read_text() == "step one\n"

    def test_checksum_file_matches_image(self, build_tree):
        """The checksum file is sha256sum-compatible."""
        work, output, image = build_tree

        package_artifacts(image, work, output, "b1")

        digest = hashlib.sha256(IMAGE_BYTES).hexdigest()
        assert (output / "BBOS_Armbian_b1.img.sha256").read_text() == (
            f"{digest}  BBOS_Armbian_b1.img\n"
        )

    def test_external_package_files(self, build_tree):
        """Files of the external deployment package are included with their prefix."""
        work, output, image = build_tree
        package = output / PACKAGE_DIR_NAME
        package.mkdir()
        (package / "customize.sh").write_text("#!/bin/bash\n")
        (package / "DEPLOYMENT.md").write_text("# guide\n")

        artifacts = package_artifacts(image, work, output, "b1")

        assert find_artifact(artifacts, f"{PACKAGE_DIR_NAME}/DEPLOYMENT.md") is not None
        assert find_artifact(artifacts, f"{PACKAGE_DIR_NAME}/customize.sh") is not None

    def test_manifest_content(self, build_tree):
        """The manifest lists every earlier artifact and extra metadata."""
        work, output, image = build_tree

        artifacts = package_artifacts(
            image, work, output, "b1", extra_metadata={"source": "placeholder"}
        )
        manifest = json.loads((output / MANIFEST).read_text())

        assert manifest["build_id"] == "b1"
        assert manifest["metadata"] == {"source": "placeholder"}
        assert [a["name"] for a in manifest["artifacts"]] == [a.name for a in artifacts[:-1]]
        assert manifest["summary"]["total_artifacts"] == len(artifacts) - 1

    def test_empty_image(self, build_tree):
        """An empty image fails packaging."""
        work, output, image = build_tree
        image.write_bytes(b"")

        with pytest.raises(IntegrityFailure):
            package_artifacts(image, work, output, "b1")


class TestGenerateManifest:
    """Tests for generate_manifest."""

    def test_without_metadata(self, tmp_path):
        """No metadata key when none is given."""
        path = tmp_path / "a.img"
        path.write_bytes(b"x")
        manifest = generate_manifest([make_artifact(path, "b1")], "b1")

        assert "metadata" not in manifest
        assert manifest["summary"]["kinds"] == ["image"]
        assert manifest["artifacts"][0]["kind"] == "image"


class TestIterArtifactBytes:
    """Tests for iter_artifact_bytes."""

    def test_plain(self, tmp_path):
        """Uncompressed streaming yields the file bytes."""
        path = tmp_path / "a.img"
        path.write_bytes(IMAGE_BYTES)
        artifact = make_artifact(path, "b1")

        assert b"".join(iter_artifact_bytes(artifact, chunk_size=100)) == IMAGE_BYTES

    def test_gzip(self, tmp_path):
        """Compressed streaming yields a valid gzip stream."""
        assert GZIP_CONTENT_TYPE == "application/gzip"
        path = tmp_path / "a.img"
        path.write_bytes(IMAGE_BYTES)
        artifact = make_artifact(path, "b1")

        data = b"".join(iter_artifact_bytes(artifact, compressed=True, chunk_size=100))

        assert data[:2] == b"\x1f\x8b"
        assert gzip.decompress(data) == IMAGE_BYTES

"""
Tests for artifact building and loading.

Covers deterministic packaging, version gating, schema validation and
circuit-blob integrity.
"""

import hashlib
import io
import json
import zipfile

import pytest

from hedeploy.artifact import ArtifactBuilder, ArtifactContainer, ArtifactLoader, load
from hedeploy.errors import ConfigValidationError, CorruptArtifact, IncompatibleVersion, UnsupportedFeature
from hedeploy.module import ArgRole, ArgSpec, LinearCircuitEngine, compile_linear_circuit

INC_BLOB = compile_linear_circuit(1, [{"op": "add_const", "args": [0], "value": 1, "bit_width": 8}], [1])


def _container(manifest: dict, files: dict) -> bytes:
    buf = io.BytesIO()
    with ArtifactContainer(buf, mode="w") as container:
        container.write_file("manifest.json", json.dumps(manifest).encode("utf-8"))
        for name, data in files.items():
            container.write_file(name, data)
    return buf.getvalue()


@pytest.fixture
def inc_builder(internal_params):
    builder = ArtifactBuilder(required_features=["lwe-linear"])
    builder.add_function("inc", [ArgSpec("x", 8)], [ArgSpec("y", 8)], INC_BLOB, internal_params)
    return builder


@pytest.fixture
def inc_manifest(inc_builder):
    return inc_builder.manifest().model_dump(mode="json")


class TestArtifactBuilder:
    """Tests for the prototyping-side writer."""

    def test_deterministic(self, inc_builder):
        assert inc_builder.to_bytes() == inc_builder.to_bytes()

    def test_manifest_contents(self, inc_manifest, internal_params):
        assert inc_manifest["format_version"] == 1
        assert inc_manifest["required_features"] == ["lwe-linear"]
        assert inc_manifest["producer"]["name"] == "hedeploy"
        assert list(inc_manifest["parameter_sets"]) == ["params-0"]
        fn = inc_manifest["functions"][0]
        assert fn["params"] == "params-0"
        assert fn["circuit"] == {
            "path": "circuits/inc.bin",
            "length": len(INC_BLOB),
            "sha256": hashlib.sha256(INC_BLOB).hexdigest(),
        }

    def test_shared_parameter_sets(self, internal_params, external_params):
        builder = ArtifactBuilder()
        ext = ArgSpec("x", 8, role=ArgRole.ENCRYPTED_EXTERNAL, crypto_params=external_params)
        builder.add_function("a", [ext], [ArgSpec("y", 8)], INC_BLOB, internal_params)
        builder.add_function("b", [ext], [ArgSpec("y", 8)], INC_BLOB, internal_params)
        assert len(builder.manifest().parameter_sets) == 2

    def test_duplicate_function(self, inc_builder, internal_params):
        with pytest.raises(ValueError):
            inc_builder.add_function("inc", [ArgSpec("x", 8)], [ArgSpec("y", 8)], INC_BLOB, internal_params)

    def test_invalid_name(self, internal_params):
        with pytest.raises(ValueError):
            ArtifactBuilder().add_function("../evil", [], [ArgSpec("y", 8)], INC_BLOB, internal_params)

    def test_write(self, inc_builder, tmp_path):
        path = tmp_path / "inc.hdm"
        digest = inc_builder.write(str(path))
        assert hashlib.sha256(path.read_bytes()).hexdigest() == digest

    def test_container_listing(self, inc_builder):
        container = ArtifactContainer.from_bytes(inc_builder.to_bytes())
        assert container.list_files() == ["circuits/inc.bin", "manifest.json"]
        assert container.read_file("circuits/inc.bin") == INC_BLOB
        container.close()


class TestArtifactLoader:
    """Tests for loading and validation."""

    def test_load_bytes(self, inc_builder, internal_params):
        descriptor = load(inc_builder.to_bytes())
        assert descriptor.format_version == 1
        assert descriptor.function_names == ["inc"]
        assert descriptor.params == (internal_params,)
        assert descriptor.required_features == frozenset({"lwe-linear"})
        assert descriptor.producer["name"] == "hedeploy"
        spec = descriptor.function("inc")
        assert spec.circuit_handle.blob == INC_BLOB
        assert spec.circuit_params == internal_params

    def test_load_path(self, inc_builder, tmp_path):
        path = tmp_path / "inc.hdm"
        inc_builder.write(str(path))
        assert load(str(path)).function_names == ["inc"]

    def test_load_open_container(self, inc_builder):
        with ArtifactContainer.from_bytes(inc_builder.to_bytes()) as container:
            assert ArtifactLoader().load(container).function_names == ["inc"]

    def test_external_args(self, my_func_artifact, internal_params, external_params):
        descriptor = load(my_func_artifact)
        spec = descriptor.function("my_func")
        assert [a.role for a in spec.inputs] == [ArgRole.ENCRYPTED_EXTERNAL] * 2
        assert spec.inputs[0].crypto_params == external_params
        assert descriptor.params == (internal_params, external_params)

    def test_engine_features(self, inc_builder):
        assert ArtifactLoader(engine=LinearCircuitEngine()).load(inc_builder.to_bytes())

    def test_not_a_zip(self):
        with pytest.raises(CorruptArtifact):
            load(b"definitely not a zip file")

    def test_missing_manifest(self):
        buf = io.BytesIO()
        with ArtifactContainer(buf, mode="w") as container:
            container.write_file("circuits/inc.bin", INC_BLOB)
        with pytest.raises(CorruptArtifact):
            load(buf.getvalue())

    def test_manifest_not_json(self):
        buf = io.BytesIO()
        with ArtifactContainer(buf, mode="w") as container:
            container.write_file("manifest.json", b"{not json")
        with pytest.raises(CorruptArtifact):
            load(buf.getvalue())

    @pytest.mark.parametrize("version", [0, 2, 99])
    def test_version_gate(self, inc_manifest, version):
        inc_manifest["format_version"] = version
        with pytest.raises(IncompatibleVersion) as exc:
            load(_container(inc_manifest, {"circuits/inc.bin": INC_BLOB}))
        assert exc.value.details["found_version"] == version
        assert exc.value.code == "HD_ARTIFACT_VERSION_UNSUPPORTED"

    def test_version_checked_before_schema(self, inc_manifest):
        """An unsupported version fails as such even when the rest is garbage."""
        with pytest.raises(IncompatibleVersion):
            load(_container({"format_version": 7, "functions": "nonsense"}, {}))

    def test_version_not_integer(self, inc_manifest):
        inc_manifest["format_version"] = "1"
        with pytest.raises(CorruptArtifact):
            load(_container(inc_manifest, {"circuits/inc.bin": INC_BLOB}))

    def test_version_range_outside_build(self):
        with pytest.raises(ConfigValidationError):
            ArtifactLoader(max_version=2)
        with pytest.raises(ConfigValidationError):
            ArtifactLoader(min_version=1, max_version=0)

    def test_unsupported_feature(self, internal_params):
        builder = ArtifactBuilder(required_features=["lwe-linear", "pbs-lut"])
        builder.add_function("inc", [ArgSpec("x", 8)], [ArgSpec("y", 8)], INC_BLOB, internal_params)
        with pytest.raises(UnsupportedFeature) as exc:
            load(builder.to_bytes())
        assert exc.value.details["missing"] == ["pbs-lut"]

    def test_explicit_feature_set(self, inc_builder):
        with pytest.raises(UnsupportedFeature):
            ArtifactLoader(supported_features=[]).load(inc_builder.to_bytes())

    def test_missing_blob(self, inc_manifest):
        with pytest.raises(CorruptArtifact) as exc:
            load(_container(inc_manifest, {}))
        assert exc.value.details["component"] == "circuit:inc"

    def test_tampered_blob(self, inc_manifest):
        tampered = INC_BLOB.replace(b'"value":1', b'"value":2')
        assert len(tampered) == len(INC_BLOB)
        with pytest.raises(CorruptArtifact):
            load(_container(inc_manifest, {"circuits/inc.bin": tampered}))

    def test_wrong_length(self, inc_manifest):
        with pytest.raises(CorruptArtifact):
            load(_container(inc_manifest, {"circuits/inc.bin": INC_BLOB + b" "}))

    def test_blob_size_limit(self, inc_builder):
        with pytest.raises(CorruptArtifact):
            ArtifactLoader(max_blob_size=8).load(inc_builder.to_bytes())

    def test_path_outside_circuits(self, inc_manifest):
        inc_manifest["functions"][0]["circuit"]["path"] = "../inc.bin"
        with pytest.raises(CorruptArtifact):
            load(_container(inc_manifest, {"circuits/inc.bin": INC_BLOB}))

    def test_bit_width_out_of_range(self, inc_manifest):
        inc_manifest["functions"][0]["inputs"][0]["bit_width"] = 17
        with pytest.raises(CorruptArtifact):
            load(_container(inc_manifest, {"circuits/inc.bin": INC_BLOB}))

    def test_external_without_params(self, inc_manifest):
        inc_manifest["functions"][0]["inputs"][0]["role"] = "encrypted-external"
        with pytest.raises(CorruptArtifact):
            load(_container(inc_manifest, {"circuits/inc.bin": INC_BLOB}))

    def test_internal_with_params(self, inc_manifest):
        inc_manifest["functions"][0]["inputs"][0]["params"] = "params-0"
        with pytest.raises(CorruptArtifact):
            load(_container(inc_manifest, {"circuits/inc.bin": INC_BLOB}))

    def test_unknown_params_reference(self, inc_manifest):
        inc_manifest["functions"][0]["params"] = "params-9"
        with pytest.raises(CorruptArtifact):
            load(_container(inc_manifest, {"circuits/inc.bin": INC_BLOB}))

    def test_clear_output(self, inc_manifest):
        inc_manifest["functions"][0]["outputs"][0]["role"] = "clear"
        with pytest.raises(CorruptArtifact):
            load(_container(inc_manifest, {"circuits/inc.bin": INC_BLOB}))

    def test_invalid_parameter_set(self, inc_manifest):
        inc_manifest["parameter_sets"]["params-0"]["polynomial_size"] = 300
        with pytest.raises(CorruptArtifact):
            load(_container(inc_manifest, {"circuits/inc.bin": INC_BLOB}))

    def test_duplicate_function_names(self, inc_manifest):
        inc_manifest["functions"].append(inc_manifest["functions"][0])
        with pytest.raises(CorruptArtifact):
            load(_container(inc_manifest, {"circuits/inc.bin": INC_BLOB}))

    def test_unknown_role(self, inc_manifest):
        inc_manifest["functions"][0]["inputs"][0]["role"] = "encrypted-sideways"
        with pytest.raises(CorruptArtifact):
            load(_container(inc_manifest, {"circuits/inc.bin": INC_BLOB}))

    @pytest.mark.parametrize("name", ["manifest.json", "circuits/inc.bin"])
    def test_corrupt_deflated_entry(self, inc_manifest, name):
        """Damaged compressed data surfaces as CorruptArtifact, not a zlib error."""
        entries = {"manifest.json": json.dumps(inc_manifest).encode("utf-8"), "circuits/inc.bin": INC_BLOB}
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.writestr(name, entries.pop(name))
            for other, data in entries.items():
                zf.writestr(other, data)
        data = bytearray(buf.getvalue())
        start = 30 + len(name.encode("utf-8"))
        for i in range(start + 2, start + 22):
            data[i] ^= 0xFF
        with pytest.raises(CorruptArtifact):
            load(bytes(data))

    def test_no_encrypted_input(self, inc_manifest):
        inc_manifest["functions"][0]["inputs"][0]["role"] = "clear"
        with pytest.raises(CorruptArtifact) as exc:
            load(_container(inc_manifest, {"circuits/inc.bin": INC_BLOB}))
        assert exc.value.details["component"] == "function:inc"

    def test_noiseless_parameter_set(self, inc_manifest):
        inc_manifest["parameter_sets"]["params-0"]["glwe_noise"] = 0.0
        with pytest.raises(CorruptArtifact):
            load(_container(inc_manifest, {"circuits/inc.bin": INC_BLOB}))

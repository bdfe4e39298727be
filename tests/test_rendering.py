"""Tests for agents.environment.rendering: template loading and fixed patches."""

import copy

import pytest

from agents.environment.rendering import load_base_template, render
from config.settings import (
    DEFAULT_BASE_TEMPLATE, ENVIRONMENT_LABEL, MANAGED_BY_LABEL, ROLE_ANNOTATION,
)
from framework.errors import TemplateError


def _manifest(kind, name, role, **extra):
    manifest = {
        "apiVersion": "v1",
        "kind": kind,
        "metadata": {"name": name, "annotations": {ROLE_ANNOTATION: role}},
    }
    manifest.update(extra)
    return manifest


@pytest.fixture
def template():
    return [
        _manifest("Secret", "creds", "credentials", stringData={"password": "pw-${ENVIRONMENT_ID}"}),
        _manifest("Cluster", "database", "database",
                  spec={"instances": 1, "storage": {"size": "1Gi"}}),
        _manifest("Service", "db-internal", "service", spec={"ports": [{"port": 5432}]}),
        _manifest("Service", "${ENVIRONMENT_ID}-external", "exposure",
                  spec={"type": "LoadBalancer", "ports": [{"port": 5432, "targetPort": 5432}]}),
    ]


class TestLoadBaseTemplate:
    """Reading the multi-document YAML template."""

    def test_shipped_template_renders(self):
        docs = load_base_template(DEFAULT_BASE_TEMPLATE)
        spec = render(docs, "feature-user-auth")
        assert spec.database["kind"] == "Cluster"
        assert spec.exposure["metadata"]["name"] == "feature-user-auth-external"
        assert spec.exposure_port == 5432
        assert len(spec.credentials) == 1

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("kind: [unclosed\n")
        with pytest.raises(TemplateError):
            load_base_template(path)

    def test_non_mapping_document(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(TemplateError):
            load_base_template(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(TemplateError):
            load_base_template(tmp_path / "nope.yaml")

    def test_empty_documents_skipped(self, tmp_path):
        path = tmp_path / "t.yaml"
        path.write_text("---\nkind: A\nmetadata: {name: a}\n---\n---\n")
        assert load_base_template(path) == [{"kind": "A", "metadata": {"name": "a"}}]


class TestRender:
    """Name substitution, namespace injection and label injection."""

    def test_namespace_injected_everywhere(self, template):
        spec = render(template, "feature-x")
        for manifest in spec.manifests(include_exposure=True)[1:]:
            assert manifest["metadata"]["namespace"] == "feature-x"

    def test_namespace_manifest_synthesized(self, template):
        spec = render(template, "feature-x")
        assert spec.namespace["kind"] == "Namespace"
        assert spec.namespace["metadata"]["name"] == "feature-x"
        assert "namespace" not in spec.namespace["metadata"]

    def test_labels_injected(self, template):
        spec = render(template, "feature-x", {"labels": {"team": "payments"}})
        for manifest in spec.manifests(include_exposure=True):
            labels = manifest["metadata"]["labels"]
            assert labels[MANAGED_BY_LABEL] == "envops"
            assert labels[ENVIRONMENT_LABEL] == "feature-x"
            assert labels["team"] == "payments"

    def test_name_substitution(self, template):
        spec = render(template, "feature-x")
        assert spec.exposure["metadata"]["name"] == "feature-x-external"
        assert spec.credentials[0]["stringData"]["password"] == "pw-feature-x"

    def test_extra_variables(self, template):
        template[1]["spec"]["imageName"] = "postgres:${PG_VERSION}"
        spec = render(template, "feature-x", {"variables": {"PG_VERSION": 16}})
        assert spec.database["spec"]["imageName"] == "postgres:16"

    def test_annotations_on_namespace(self, template):
        spec = render(template, "feature-x", {"annotations": {"envops.io/branch": "feature/x"}})
        assert spec.namespace["metadata"]["annotations"]["envops.io/branch"] == "feature/x"

    def test_input_not_mutated(self, template):
        before = copy.deepcopy(template)
        render(template, "feature-x", {"labels": {"a": "b"}, "patches": {"database": {"spec": {"instances": 3}}}})
        assert template == before

    def test_pure(self, template):
        first = render(template, "feature-x")
        second = render(template, "feature-x")
        assert first.manifests(include_exposure=True) == second.manifests(include_exposure=True)

    def test_spec_is_read_only(self, template):
        spec = render(template, "feature-x")
        with pytest.raises(TypeError):
            spec.database["spec"]["instances"] = 5
        with pytest.raises(AttributeError):
            spec.environment_id = "other"

    def test_manifest_order(self, template):
        spec = render(template, "feature-x")
        assert [m["kind"] for m in spec.manifests()] == ["Namespace", "Secret", "Cluster", "Service"]
        assert spec.manifests(include_exposure=True)[-1]["metadata"]["name"] == "feature-x-external"

    def test_manifests_are_fresh_copies(self, template):
        spec = render(template, "feature-x")
        copies = spec.manifests()
        copies[2]["spec"]["instances"] = 99
        assert spec.database["spec"]["instances"] == 1

    def test_empty_environment_id(self, template):
        with pytest.raises(TemplateError):
            render(template, "")


class TestRenderPatches:
    """Per-role overlay patches."""

    def test_patch_merges_nested(self, template):
        spec = render(template, "feature-x", {"patches": {"database": {"spec": {"instances": 3}}}})
        assert spec.database["spec"]["instances"] == 3
        assert spec.database["spec"]["storage"]["size"] == "1Gi"

    def test_patch_none_removes_key(self, template):
        spec = render(template, "feature-x", {"patches": {"database": {"spec": {"storage": None}}}})
        assert "storage" not in spec.database["spec"]

    def test_patch_substitutes_tokens(self, template):
        spec = render(template, "feature-x",
                      {"patches": {"service": {"metadata": {"annotations": {"dns": "${ENVIRONMENT_ID}.internal"}}}}})
        assert spec.service["metadata"]["annotations"]["dns"] == "feature-x.internal"

    def test_patch_applies_to_all_credentials(self, template):
        template.append(_manifest("Secret", "creds-2", "credentials"))
        spec = render(template, "feature-x", {"patches": {"credentials": {"type": "Opaque"}}})
        assert [c["type"] for c in spec.credentials] == ["Opaque", "Opaque"]

    def test_unknown_patch_role(self, template):
        with pytest.raises(TemplateError):
            render(template, "feature-x", {"patches": {"cache": {"spec": {}}}})


class TestRenderTemplateErrors:
    """Missing or malformed patch targets."""

    @pytest.mark.parametrize("role_index", [1, 2, 3])
    def test_missing_required_role(self, template, role_index):
        del template[role_index]
        with pytest.raises(TemplateError):
            render(template, "feature-x")

    def test_duplicate_role(self, template):
        template.append(_manifest("Service", "second", "service"))
        with pytest.raises(TemplateError):
            render(template, "feature-x")

    def test_missing_kind(self, template):
        del template[1]["kind"]
        with pytest.raises(TemplateError):
            render(template, "feature-x")

    def test_missing_name(self, template):
        del template[2]["metadata"]["name"]
        with pytest.raises(TemplateError):
            render(template, "feature-x")

    def test_missing_role_annotation(self, template):
        template.append({"kind": "ConfigMap", "metadata": {"name": "extra"}})
        with pytest.raises(TemplateError):
            render(template, "feature-x")

    def test_unknown_role_annotation(self, template):
        template.append(_manifest("ConfigMap", "extra", "cache"))
        with pytest.raises(TemplateError):
            render(template, "feature-x")

    def test_credentials_are_optional(self, template):
        del template[0]
        spec = render(template, "feature-x")
        assert spec.credentials == ()

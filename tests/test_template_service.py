"""Tests for the template store, version chain and compiler"""
import pytest

from approval_engine.domain.errors import (
    AlreadyExistsError, TemplateNotFoundError, TemplateValidationError
)
from approval_engine.domain.models import (
    TemplateCreateRequest, TemplateUpdateRequest, TransitionGate
)

from .conftest import TENANT, direct_rule

STAGES = [
    {"stage_no": 1, "name": "Manager"},
    {"stage_no": 2, "name": "Finance", "mode": "parallel", "quorum": {"type": "any"}},
]
RULES = [direct_rule(1, "u_cfo"), direct_rule(2, "u_ceo", "u_auditor")]


@pytest.fixture
def service(container):
    return container.template_service


class TestCrud:

    def test_create_starts_at_version_one(self, make_template):
        template = make_template(STAGES, RULES, code="PO")
        assert template.version_no == 1
        assert template.is_active
        assert template.created_by == "designer"

    def test_duplicate_code_is_rejected(self, make_template):
        make_template(STAGES, RULES, code="PO")
        with pytest.raises(AlreadyExistsError):
            make_template(STAGES, RULES, code="PO")

    def test_get_by_id_or_code(self, service, make_template):
        template = make_template(STAGES, RULES, code="PO")
        assert service.get(TENANT, template.template_id).code == "PO"
        assert service.get(TENANT, "PO").template_id == template.template_id

    def test_get_missing(self, service):
        with pytest.raises(TemplateNotFoundError):
            service.get(TENANT, "NOPE")

    def test_list_pages_active_versions(self, service, make_template):
        for code in ["C", "A", "B"]:
            make_template(STAGES, RULES, code=code)

        page = service.list(TENANT, page=1, page_size=2)
        assert [t.code for t in page.items] == ["A", "B"]
        assert page.meta.total == 3
        assert page.meta.has_next and not page.meta.has_prev

        last = service.list(TENANT, page=2, page_size=2)
        assert [t.code for t in last.items] == ["C"]

    def test_delete_removes_every_version(self, service, make_template):
        template = make_template(STAGES, RULES, code="PO")
        service.update(TENANT, template.template_id, TemplateUpdateRequest(name="v2"))

        assert service.delete(TENANT, "PO") == 2
        with pytest.raises(TemplateNotFoundError):
            service.delete(TENANT, "PO")


class TestVersionChain:

    def test_update_creates_next_version(self, service, make_template):
        v1 = make_template(STAGES, RULES, code="PO")
        v2 = service.update(TENANT, v1.template_id, TemplateUpdateRequest(name="Renamed"))

        assert v2.version_no == 2
        assert v2.template_id != v1.template_id
        assert v2.name == "Renamed"
        # Omitted fields are carried over
        assert len(v2.stages) == 2
        assert len(v2.rules) == 2
        assert not service.get(TENANT, v1.template_id).is_active
        assert service.get(TENANT, "PO").template_id == v2.template_id

    def test_failed_insert_keeps_active_version(self, service, make_template, monkeypatch):
        v1 = make_template(STAGES, RULES, code="PO")

        def broken_insert(template):
            raise RuntimeError("write failed")

        monkeypatch.setattr(service.repo, "create_template", broken_insert)
        with pytest.raises(RuntimeError):
            service.update(TENANT, v1.template_id, TemplateUpdateRequest(name="Renamed"))

        assert service.get(TENANT, "PO").template_id == v1.template_id
        assert [v.version_no for v in service.list_versions(TENANT, "PO")] == [1]

    def test_failed_activation_restores_previous_version(self, service, make_template, monkeypatch):
        v1 = make_template(STAGES, RULES, code="PO")
        set_active = service.repo.set_active

        def refuse_new_version(tenant_id, template_id, is_active):
            if is_active and template_id != v1.template_id:
                raise RuntimeError("write failed")
            set_active(tenant_id, template_id, is_active)

        monkeypatch.setattr(service.repo, "set_active", refuse_new_version)
        with pytest.raises(RuntimeError):
            service.update(TENANT, v1.template_id, TemplateUpdateRequest(name="Renamed"))

        assert service.get(TENANT, "PO").template_id == v1.template_id
        assert [v.is_active for v in service.list_versions(TENANT, "PO")] == [False, True]

    def test_versions_are_newest_first(self, service, make_template):
        v1 = make_template(STAGES, RULES, code="PO")
        service.update(TENANT, v1.template_id, TemplateUpdateRequest(name="v2"))
        versions = service.list_versions(TENANT, "PO")
        assert [v.version_no for v in versions] == [2, 1]

    def test_rollback_clones_old_version(self, service, make_template):
        v1 = make_template(STAGES, RULES, code="PO")
        service.update(TENANT, v1.template_id, TemplateUpdateRequest(
            name="Single stage", stages=[{"stage_no": 1}], rules=[direct_rule(1, "u_ceo")]
        ))

        v3 = service.rollback(TENANT, "PO", 1, actor_id="admin")

        assert v3.version_no == 3
        assert v3.is_active
        assert v3.name == "Test template"
        assert len(v3.stages) == 2
        assert v3.created_by == "admin"
        assert [v.is_active for v in service.list_versions(TENANT, "PO")] == [True, False, False]

    def test_rollback_to_missing_version(self, service, make_template):
        make_template(STAGES, RULES, code="PO")
        with pytest.raises(TemplateNotFoundError):
            service.rollback(TENANT, "PO", 7)

    def test_diff(self, service, make_template):
        v1 = make_template(STAGES, RULES, code="PO")
        service.update(TENANT, v1.template_id, TemplateUpdateRequest(
            stages=[{"stage_no": 1}], rules=[direct_rule(1, "u_ceo")]
        ))

        diff = service.diff(TENANT, "PO", 1, 2)

        assert not diff.name.changed
        assert diff.stage_count.changed
        assert (diff.stage_count.v1, diff.stage_count.v2) == (2, 1)
        assert diff.rule_count.changed

    def test_diff_missing_version(self, service, make_template):
        make_template(STAGES, RULES, code="PO")
        with pytest.raises(TemplateNotFoundError) as exc:
            service.diff(TENANT, "PO", 1, 4)
        assert exc.value.details["version_no"] == 4


class TestValidation:

    def validate(self, service, stages, rules):
        return service.validate(TemplateCreateRequest(code="X", name="X", stages=stages, rules=rules))

    def test_valid_template(self, service):
        result = self.validate(service, STAGES, RULES)
        assert result.valid
        assert result.errors == []

    def test_needs_stages_and_rules(self, service):
        result = self.validate(service, [], [])
        assert not result.valid
        assert {e.path for e in result.errors} == {"stages", "rules"}

    def test_stage_numbers_must_be_contiguous(self, service):
        result = self.validate(service, [{"stage_no": 1}, {"stage_no": 3}], RULES)
        assert not result.valid
        assert "contiguous" in result.errors[0].message

    def test_unknown_mode(self, service):
        result = self.validate(service, [{"stage_no": 1, "mode": "diagonal"}], RULES)
        assert [e.path for e in result.errors] == ["stages[0].mode"]

    def test_unknown_strategy(self, service):
        result = self.validate(service, STAGES, [{"assign_to": {"strategy": "astrology"}}])
        assert [e.path for e in result.errors] == ["rules[0].assign_to.strategy"]

    def test_conditions_must_be_an_object(self, service):
        rule = direct_rule(1, "u_cfo")
        rule["conditions"] = ["amount > 5"]
        result = self.validate(service, STAGES, [rule])
        assert [e.path for e in result.errors] == ["rules[0].conditions"]

    def test_count_quorum_needs_value(self, service):
        stages = [{"stage_no": 1, "mode": "parallel", "quorum": {"type": "count"}}]
        result = self.validate(service, stages, RULES)
        assert [e.path for e in result.errors] == ["stages[0].quorum.value"]

    def test_warnings_do_not_invalidate(self, service):
        stages = [{"stage_no": 1, "quorum": {"type": "any"}, "allowed_actions": ["teleport"]}]
        result = self.validate(service, stages, [direct_rule(4, "u_cfo")])
        assert result.valid
        assert len(result.warnings) == 3


class TestCompile:

    def test_compile_stores_artifact(self, service, make_template):
        template = make_template(STAGES, RULES, code="PO")
        compiled = service.compile(TENANT, "PO")

        assert compiled.version == 1
        assert [s["stage_no"] for s in compiled.stages] == [1, 2]
        assert len(compiled.compiled_hash) == 64

        stored = service.get(TENANT, template.template_id)
        assert stored.compiled_hash == compiled.compiled_hash
        assert stored.compiled_artifact["code"] == "PO"

    def test_hash_is_stable(self, service, make_template):
        make_template(STAGES, RULES, code="PO")
        assert service.compile(TENANT, "PO").compiled_hash == service.compile(TENANT, "PO").compiled_hash

    def test_new_version_changes_hash(self, service, make_template):
        v1 = make_template(STAGES, RULES, code="PO")
        first = service.compile(TENANT, v1.template_id)
        v2 = service.update(TENANT, v1.template_id, TemplateUpdateRequest(name="Same content"))

        assert v2.compiled_hash is None
        assert service.compile(TENANT, v2.template_id).compiled_hash != first.compiled_hash

    def test_invalid_template_does_not_compile(self, service, make_template):
        make_template([], RULES, code="EMPTY")
        with pytest.raises(TemplateValidationError) as exc:
            service.compile(TENANT, "EMPTY")
        assert exc.value.details["errors"][0]["path"] == "stages"


class TestAnalysis:

    def test_impact_covers_every_version(self, container, service, make_template):
        v1 = make_template(STAGES, RULES, code="PO")
        v2 = service.update(TENANT, v1.template_id, TemplateUpdateRequest(name="v2"))
        for transition_id, template_id in [("po_submit", v1.template_id), ("po_amend", v2.template_id)]:
            container.lifecycle_repo.upsert_gate(TransitionGate(
                tenant_id=TENANT, transition_id=transition_id,
                entity_name="purchase_order", approval_template_id=template_id
            ))

        impact = service.impact_analysis(TENANT, "PO")

        assert impact.template_id == v2.template_id
        assert [t.transition_id for t in impact.affected_transitions] == ["po_amend", "po_submit"]

    def test_resolution_preview(self, service, directory, make_template):
        make_template(
            STAGES,
            [
                direct_rule(1, "u_cfo"),
                {"stage_no": 2, "assign_to": {"strategy": "group", "group_code": "TREASURY"}},
            ],
            code="PO"
        )

        previews = service.test_resolution(TENANT, "PO", {"amount": 50})

        assert [p.stage_no for p in previews] == [1, 2]
        assert [a.principal_id for a in previews[1].assignees] == ["u_cfo", "u_auditor"]
        assert previews[1].strategy == "group"

    def test_resolution_preview_single_stage(self, service, directory, make_template):
        make_template(STAGES, RULES, code="PO")
        previews = service.test_resolution(TENANT, "PO", {}, stage_no=2)
        assert len(previews) == 1
        assert previews[0].stage_no == 2

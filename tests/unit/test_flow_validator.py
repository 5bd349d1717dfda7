import pytest

from flow_errors import FlowValidationError
from flow_models import FlowConfig, FlowDefinition, FlowInput
from flow_validator import (
    check_input_values,
    find_cycles,
    parse_config,
    parse_flow,
    step_dependencies,
    validate_flow,
)


def make_flow(steps, **extra) -> FlowDefinition:
    return FlowDefinition.model_validate({"name": extra.pop("name", "flow"), "steps": steps, **extra})


def step(step_id, url="http://api.test/x", method="GET", **extra):
    return {"id": step_id, "name": f"Step {step_id}", "method": method, "url": url, **extra}


def locations(issues):
    return [issue.location for issue in issues]


def test_valid_flow_has_no_issues():
    flow = make_flow([step("login", method="post"), step("profile", url="{{env.base}}/users/{{login.body.id}}")])
    assert validate_flow(flow) == []
    assert flow.steps[0].method == "POST"


def test_empty_steps_and_missing_name():
    issues = validate_flow(FlowDefinition.model_validate({"steps": []}))
    assert set(locations(issues)) == {"name", "steps"}


def test_all_step_violations_are_reported_together():
    flow = make_flow([
        {"id": "a", "method": "FETCH", "url": "ftp://nowhere"},
        {"id": "a", "name": "dup"},
        {"name": "no id", "method": "GET", "url": "/ok", "timeoutMs": 0, "expectedStatus": 42},
    ])
    issues = validate_flow(flow)
    locs = locations(issues)
    assert "steps[0].name" in locs
    assert "steps[0].method" in locs
    assert "steps[0].url" in locs
    assert "steps[1].id" in locs  # duplicate
    assert "steps[1].method" in locs and "steps[1].url" in locs
    assert "steps[2].id" in locs
    assert "steps[2].timeoutMs" in locs
    assert "steps[2].expectedStatus" in locs


def test_endpoint_reference_replaces_method_and_url():
    flow = make_flow([{"id": "saved", "name": "Saved request", "endpointId": "ep-1"}])
    assert validate_flow(flow) == []


@pytest.mark.parametrize("url", [
    "http://api.test/users",
    "https://api.test",
    "/relative/path?q=1",
    "{{env.base}}/users",
])
def test_accepted_url_templates(url):
    assert validate_flow(make_flow([step("a", url=url)])) == []


@pytest.mark.parametrize("url", [
    "",
    "api.test/users",
    "http:///no-host",
    "/path with space",
    "/users/{{env.id",
])
def test_rejected_url_templates(url):
    assert "steps[0].url" in locations(validate_flow(make_flow([step("a", url=url)])))


def test_timeout_and_concurrency_bounds():
    flow = make_flow([step("a", timeoutMs=600001)], config={"timeoutMs": 0, "maxConcurrency": 21})
    assert set(locations(validate_flow(flow))) == {"steps[0].timeoutMs", "config.timeoutMs", "config.maxConcurrency"}

    ok = make_flow([step("a", timeoutMs=600000)], config={"timeoutMs": 3600000, "maxConcurrency": 20})
    assert validate_flow(ok) == []


def test_explicit_config_is_checked_instead_of_flow_config():
    flow = make_flow([step("a")], config={"maxConcurrency": 5})
    issues = validate_flow(flow, FlowConfig(maxConcurrency=0))
    assert locations(issues) == ["config.maxConcurrency"]


def test_step_timeout_alias():
    flow = make_flow([step("a", timeout=1500)])
    assert flow.steps[0].timeoutMs == 1500


def test_reserved_and_malformed_ids():
    flow = make_flow([step("env"), step("1st"), step("ok_id-2")])
    locs = locations(validate_flow(flow))
    assert locs.count("steps[0].id") == 1
    assert locs.count("steps[1].id") == 1
    assert "steps[2].id" not in locs


def test_malformed_reference_is_reported():
    flow = make_flow([step("a", headers={"X-User": "{{user}}"})])
    issues = validate_flow(flow)
    assert locations(issues) == ["steps[0]"]
    assert "{{user}}" in issues[0].message


def test_dependency_cycle_is_reported_in_parallel_mode():
    flow = make_flow(
        [step("a", url="/a/{{b.body.id}}"), step("b", url="/b/{{a.body.id}}"), step("c")],
        config={"parallel": True},
    )
    issues = validate_flow(flow)
    assert any("cycle" in issue.message.lower() for issue in issues)


def test_forward_reference_rejected_only_in_sequential_mode():
    steps = [step("a", url="/a/{{b.body.id}}"), step("b")]
    sequential = validate_flow(make_flow(steps))
    assert any("later step 'b'" in issue.message for issue in sequential)
    assert validate_flow(make_flow(steps, config={"parallel": True})) == []


def test_step_dependencies_ignore_outside_steps_and_reserved_scopes():
    flow = make_flow([
        step("a", url="{{env.base}}/{{earlierFlowStep.body.id}}"),
        step("b", headers={"Authorization": "Bearer {{a.body.token}}"}, body={"n": ["{{a.status}}"]}),
    ])
    assert step_dependencies(flow.steps) == {"a": set(), "b": {"a"}}
    assert find_cycles({"a": {"a"}}) == [["a", "a"]]


def test_input_definitions_are_checked():
    flow = make_flow([step("a")], inputs=[
        {"name": "user", "type": "string"},
        {"name": "bad name", "type": "string"},
        {"name": "n", "type": "integer"},
        {"name": "count", "type": "number", "validation": {"min": 5, "max": 1, "min_length": 2}},
        {"name": "color", "type": "string", "validation": {"options": ["red", 3], "pattern": "("}},
    ])
    locs = locations(validate_flow(flow))
    assert "inputs[1].name" in locs
    assert "inputs[2].type" in locs
    assert "inputs[3].validation" in locs
    assert "inputs[3].validation.min_length" in locs
    assert "inputs[4].validation.options" in locs
    assert "inputs[4].validation.pattern" in locs
    assert not any(loc.startswith("inputs[0]") for loc in locs)


def test_check_input_values():
    inputs = [
        FlowInput(name="user", type="string", required=True),
        FlowInput(name="age", type="number", validation={"min": 18}),
        FlowInput(name="email", type="email"),
        FlowInput(name="color", type="string", validation={"options": ["red", "blue"]}),
        FlowInput(name="code", type="string", validation={"pattern": "^[A-Z]{3}$", "max_length": 3}),
        FlowInput(name="region", type="string", required=True, default="eu"),
    ]
    issues = check_input_values(inputs, {"age": "12", "email": "nope", "color": "green", "code": "abcd"})
    assert sorted(locations(issues)) == sorted([
        "inputs.user", "inputs.age", "inputs.email", "inputs.color", "inputs.code", "inputs.code",
    ])

    good = {"user": "alice", "age": 30, "email": "a@b.io", "color": "red", "code": "ABC"}
    assert check_input_values(inputs, good) == []


def test_parse_flow_converts_type_errors_into_issues():
    with pytest.raises(FlowValidationError) as exc_info:
        parse_flow({"name": "x", "steps": [{"id": "a", "timeoutMs": "soon"}]})
    assert exc_info.value.issues[0].location == "steps[0].timeoutMs"
    assert exc_info.value.to_dict()["error"] == "validation"

    with pytest.raises(FlowValidationError):
        parse_flow(["not", "a", "mapping"])


def test_parse_config():
    assert parse_config(None) is None
    assert parse_config({"parallel": True}).parallel is True
    with pytest.raises(FlowValidationError) as exc_info:
        parse_config({"maxConcurrency": "many"})
    assert exc_info.value.issues[0].location == "config.maxConcurrency"


def test_extract_rules_are_checked():
    flow = make_flow([step("a", extract={"bad name": "body.x", "empty": "", "gap": "body..x", "token": "body.token"})])
    assert sorted(locations(validate_flow(flow))) == [
        "steps[0].extract.bad name", "steps[0].extract.empty", "steps[0].extract.gap",
    ]


def test_runtime_references_depend_on_extracting_steps():
    flow = make_flow([
        step("login", extract={"token": "body.token"}),
        step("refresh", url="/refresh/{{runtime.token}}", extract={"token": "body.token"}),
        step("profile", headers={"Authorization": "Bearer {{runtime.token}}"}),
        step("other", url="/x/{{runtime.unknown}}"),
    ])
    assert step_dependencies(flow.steps) == {
        "login": set(),
        "refresh": {"login"},
        "profile": {"login", "refresh"},
        "other": set(),
    }


def test_runtime_reference_to_later_extract_is_a_sequential_issue():
    steps = [step("profile", url="/users/{{runtime.userId}}"), step("login", extract={"userId": "body.id"})]
    issues = validate_flow(make_flow(steps))
    assert locations(issues) == ["steps[0]"]
    assert "later step 'login'" in issues[0].message
    assert validate_flow(make_flow(steps, config={"parallel": True})) == []

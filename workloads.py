from __future__ import annotations

import logging
import random
import string
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Mapping, MutableMapping, Optional

from checks import Check, faster_than, has_json_field, status_in
from http_client import HttpClient, Response
from ramp import Stage, parse_stages
from scenario import (
    RequestSpec,
    RunContext,
    Scenario,
    ScenarioStep,
    WeightedScenario,
    extract_json,
    join_url,
    validate_weights,
)


logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json"}
USER_AUTH = {"Authorization": "Bearer {token}"}
USER_AUTH_JSON = {**JSON_HEADERS, **USER_AUTH}
ADMIN_AUTH_JSON = {"Authorization": "Bearer {admin_token}", **JSON_HEADERS}

SetupHook = Callable[[HttpClient, RunContext], Awaitable[Mapping[str, Any]]]
TeardownHook = Callable[[HttpClient, RunContext], Awaitable[None]]


class SetupError(RuntimeError):
    pass


@dataclass(frozen=True)
class Workload:
    name: str
    description: str
    scenarios: tuple[WeightedScenario, ...]
    stages: tuple[Stage, ...]
    thresholds: tuple[tuple[str, str], ...] = ()
    setup: Optional[SetupHook] = None
    teardown: Optional[TeardownHook] = None
    idle_pacing: tuple[float, float] = (1.0, 1.0)

    def scenario_names(self) -> list[str]:
        return [item.scenario.name for item in self.scenarios]

    def with_weights(self, overrides: Mapping[str, float]) -> Workload:
        known = set(self.scenario_names())
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(
                f"Unknown scenario(s) in weight overrides: {', '.join(unknown)}. "
                f"Known scenarios: {', '.join(sorted(known))}"
            )
        scenarios = tuple(
            replace(item, weight=float(overrides.get(item.scenario.name, item.weight)))
            for item in self.scenarios
        )
        validate_weights([item.weight for item in scenarios])
        return replace(self, scenarios=scenarios)


def random_string(rng: random.Random, length: int = 8) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(rng.choice(alphabet) for _ in range(length))


def random_cpf(rng: random.Random) -> str:
    return f"{rng.randrange(10**11):011d}"


def random_phone(rng: random.Random) -> str:
    return f"11{rng.randrange(10**9):09d}"


def _is_json_list(response: Response) -> bool:
    return isinstance(response.json(), list)


def _new_registration(state: MutableMapping[str, Any], rng: random.Random) -> None:
    suffix = random_string(rng, 12)
    state["registration"] = {
        "name": f"user_{suffix}",
        "email": f"test_{suffix}@example.com",
        "password": "12341234",
    }


def _new_student(state: MutableMapping[str, Any], rng: random.Random) -> None:
    state["student"] = {
        "fullName": f"Load Test Student {random_string(rng)}",
        "dateOfBirth": "2005-01-01",
        "cpf": random_cpf(rng),
        "email": f"student-{random_string(rng)}@example.com",
        "phone": random_phone(rng),
        "address": f"Rua {random_string(rng)}, {rng.randrange(1000)}",
    }


def _new_teacher(state: MutableMapping[str, Any], rng: random.Random) -> None:
    state["teacher"] = {
        "fullName": f"Load Test Teacher {random_string(rng)}",
        "dateOfBirth": "1985-06-15",
        "cpf": random_cpf(rng),
        "email": f"teacher-{random_string(rng)}@example.com",
        "phone": random_phone(rng),
        "specialization": rng.choice(["Mathematics", "Physics"]),
    }


def _updated_student(values: Mapping[str, Any]) -> dict[str, Any]:
    student = dict(values["student"])
    student["fullName"] = f"Updated {student['fullName']}"
    return student


async def admin_login(http: HttpClient, context: RunContext) -> dict[str, Any]:
    response = await http.send(
        "POST",
        join_url(context.base_url, "/api/auth/login"),
        headers=JSON_HEADERS,
        body={"email": context.get("admin_email"), "password": context.get("admin_password")},
        name="setup admin login",
    )
    if response.status != 200:
        raise SetupError(f"Setup failed: login returned {response.status}")
    token = response.json_value("token")
    if not token:
        raise SetupError("Setup failed: login response has no token")
    return {"admin_token": token}


async def log_completion(http: HttpClient, context: RunContext) -> None:
    logger.info("Load test completed against %s", context.base_url)


# ---- mixed: weighted auth/health/CRUD traffic with per-user sessions ----

USER_LOGIN = ScenarioStep(
    name="login",
    request=RequestSpec(
        "POST",
        "/api/auth/login",
        headers=JSON_HEADERS,
        body={"email": "{user_email}", "password": "{user_password}"},
    ),
    checks=(status_in("login status 200", 200),),
    extract=extract_json(token="token"),
    think_time=(1.0, 1.0),
)


def _authenticated(name: str, step: ScenarioStep) -> Scenario:
    requires = ("token",) + tuple(key for key in step.requires if key != "token")
    return Scenario(
        name=name,
        steps=(replace(step, requires=requires, fallback=USER_LOGIN),),
        pacing=(1.0, 1.0),
    )


def build_mixed_workload() -> Workload:
    # The 0.6 authenticated band is split by the per-action weights below;
    # its final tenth stays unallocated and becomes an idle iteration.
    authenticated_band = 0.6
    actions = [
        (0.2, _authenticated("get_me", ScenarioStep(
            name="get me",
            request=RequestSpec("GET", "/api/auth/me", headers=USER_AUTH),
            checks=(status_in("get me status 200", 200),),
        ))),
        (0.2, _authenticated("list_students", ScenarioStep(
            name="list students",
            request=RequestSpec("GET", "/api/students", headers=USER_AUTH),
            checks=(status_in("list students status 200", 200),),
        ))),
        (0.1, _authenticated("create_student", ScenarioStep(
            name="create student",
            request=RequestSpec("POST", "/api/students", headers=USER_AUTH_JSON, body=lambda v: v["student"]),
            checks=(status_in("create student status 200", 200, 201),),
            extract=extract_json(student_id="id"),
            prepare=_new_student,
            trend="student_creation_duration",
        ))),
        (0.1, _authenticated("get_student", ScenarioStep(
            name="get student",
            request=RequestSpec("GET", "/api/students/{student_id}", headers=USER_AUTH),
            checks=(status_in("get student status 200", 200),),
            requires=("student_id",),
        ))),
        (0.1, _authenticated("update_student", ScenarioStep(
            name="update student",
            request=RequestSpec(
                "PUT",
                "/api/students/{student_id}",
                headers=USER_AUTH_JSON,
                body=lambda v: {"fullName": f"Updated Student {v['vu']}-{v['iteration']}"},
            ),
            checks=(status_in("update student status 200", 200),),
            requires=("student_id",),
        ))),
        (0.1, _authenticated("list_teachers", ScenarioStep(
            name="list teachers",
            request=RequestSpec("GET", "/api/teachers", headers=USER_AUTH),
            checks=(status_in("list teachers status 200", 200),),
        ))),
        (0.1, _authenticated("create_teacher", ScenarioStep(
            name="create teacher",
            request=RequestSpec("POST", "/api/teachers", headers=USER_AUTH_JSON, body=lambda v: v["teacher"]),
            checks=(status_in("create teacher status 200", 200, 201),),
            prepare=_new_teacher,
            trend="teacher_creation_duration",
        ))),
    ]

    scenarios = [
        WeightedScenario(
            Scenario(
                name="register",
                steps=(
                    ScenarioStep(
                        name="register",
                        request=RequestSpec(
                            "POST",
                            "/api/auth/register",
                            headers=JSON_HEADERS,
                            body=lambda v: v["registration"],
                        ),
                        checks=(status_in("register status 200", 200, 201),),
                        prepare=_new_registration,
                    ),
                ),
                pacing=(1.0, 1.0),
            ),
            0.1,
        ),
        WeightedScenario(Scenario(name="login", steps=(replace(USER_LOGIN, think_time=None),), pacing=(1.0, 1.0)), 0.2),
        WeightedScenario(
            Scenario(
                name="health",
                steps=(
                    ScenarioStep(
                        name="health check",
                        request=RequestSpec("GET", "/api/auth/health"),
                        checks=(status_in("health check status 200", 200),),
                    ),
                ),
                pacing=(0.5, 0.5),
            ),
            0.1,
        ),
    ]
    scenarios.extend(
        WeightedScenario(scenario, round(weight * authenticated_band, 6)) for weight, scenario in actions
    )

    return Workload(
        name="mixed",
        description="Weighted mix of registration, login, health and authenticated CRUD calls.",
        scenarios=tuple(scenarios),
        stages=tuple(parse_stages("30s:10,1m:50,30s:100,1m:100,30s:0")),
        thresholds=(
            ("http_req_duration", "p(95)<2000"),
            ("errors", "rate<0.1"),
        ),
    )


# ---- crud: admin session from setup, full CRUD walk per iteration ----


def build_crud_workload() -> Workload:
    steps = (
        ScenarioStep(
            name="auth login",
            request=RequestSpec(
                "POST",
                "/api/auth/login",
                headers=JSON_HEADERS,
                body={"email": "{admin_email}", "password": "{admin_password}"},
            ),
            checks=(
                status_in("login status 200", 200),
                has_json_field("has token", "token"),
                faster_than("response time < 500ms", 500.0),
            ),
        ),
        ScenarioStep(
            name="list students",
            request=RequestSpec("GET", "/api/students", headers=ADMIN_AUTH_JSON),
            checks=(
                status_in("students list 200", 200),
                Check("students list has data", _is_json_list),
            ),
        ),
        ScenarioStep(
            name="create student",
            request=RequestSpec("POST", "/api/students", headers=ADMIN_AUTH_JSON, body=lambda v: v["student"]),
            checks=(
                status_in("create student success", 200, 201),
                has_json_field("student has id", "id"),
            ),
            extract=extract_json(student_id="id"),
            prepare=_new_student,
            resets=("student_id",),
            trend="student_creation_duration",
        ),
        ScenarioStep(
            name="get student",
            request=RequestSpec("GET", "/api/students/{student_id}", headers=ADMIN_AUTH_JSON),
            checks=(status_in("get student 200", 200),),
            requires=("student_id",),
        ),
        ScenarioStep(
            name="update student",
            request=RequestSpec(
                "PUT", "/api/students/{student_id}", headers=ADMIN_AUTH_JSON, body=_updated_student
            ),
            checks=(status_in("update student success", 200, 204),),
            requires=("student_id",),
        ),
        ScenarioStep(
            name="delete student",
            request=RequestSpec("DELETE", "/api/students/{student_id}", headers=ADMIN_AUTH_JSON),
            checks=(status_in("delete student success", 200, 204),),
            requires=("student_id",),
        ),
        ScenarioStep(
            name="list teachers",
            request=RequestSpec("GET", "/api/teachers", headers=ADMIN_AUTH_JSON),
            checks=(
                status_in("teachers list 200", 200),
                Check("teachers list has data", _is_json_list),
            ),
        ),
        ScenarioStep(
            name="create teacher",
            request=RequestSpec("POST", "/api/teachers", headers=ADMIN_AUTH_JSON, body=lambda v: v["teacher"]),
            checks=(
                status_in("create teacher success", 200, 201),
                has_json_field("teacher has id", "id"),
            ),
            extract=extract_json(teacher_id="id"),
            prepare=_new_teacher,
            resets=("teacher_id",),
            trend="teacher_creation_duration",
        ),
        ScenarioStep(
            name="get teacher",
            request=RequestSpec("GET", "/api/teachers/{teacher_id}", headers=ADMIN_AUTH_JSON),
            checks=(status_in("get teacher 200", 200),),
            requires=("teacher_id",),
        ),
        ScenarioStep(
            name="list classes",
            request=RequestSpec("GET", "/api/classes", headers=ADMIN_AUTH_JSON),
            checks=(status_in("classes list 200", 200),),
        ),
        ScenarioStep(
            name="search students",
            request=RequestSpec("GET", "/api/students", headers=ADMIN_AUTH_JSON, params={"search": "Load"}),
            checks=(status_in("search students 200", 200),),
        ),
        ScenarioStep(
            name="paginate students",
            request=RequestSpec(
                "GET", "/api/students", headers=ADMIN_AUTH_JSON, params={"page": "1", "limit": "10"}
            ),
            checks=(status_in("pagination works", 200),),
        ),
    )

    return Workload(
        name="crud",
        description="Admin login in setup, then a full student/teacher CRUD walk per iteration.",
        scenarios=(WeightedScenario(Scenario(name="school_crud", steps=steps, pacing=(1.0, 3.0)), 1.0),),
        stages=tuple(parse_stages("1m:10,3m:50,2m:100,2m:100,1m:0")),
        thresholds=(
            ("http_req_duration", "p(95)<2000"),
            ("http_req_duration", "p(99)<3000"),
            ("http_req_failed", "rate<0.01"),
            ("errors", "rate<0.05"),
            ("student_creation_duration", "p(95)<1500"),
            ("teacher_creation_duration", "p(95)<1500"),
        ),
        setup=admin_login,
        teardown=log_completion,
    )


WORKLOADS: dict[str, Callable[[], Workload]] = {
    "crud": build_crud_workload,
    "mixed": build_mixed_workload,
}


def get_workload(name: str) -> Workload:
    try:
        builder = WORKLOADS[name]
    except KeyError as exc:
        raise ValueError(f"Unknown workload '{name}'. Choose from: {', '.join(sorted(WORKLOADS))}") from exc
    return builder()

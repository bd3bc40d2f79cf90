import textwrap

import pytest

from dso.descriptor import load_descriptor, parse_descriptor
from dso.errors import InvalidDescriptorError


def _base(**services):
    return {"project": "shop", "services": services}


def test_full_descriptor(tmp_path):
    p = tmp_path / "stack.yaml"
    p.write_text(
        textwrap.dedent(
            """
            project: shop
            services:
              db:
                image: postgres:16
                health: {type: tcp, port: 5432}
              web:
                image: shop/web
                command: gunicorn app:app -b 0.0.0.0:8000
                depends_on: [db, migrate]
                env: {WORKERS: 4}
                restart: always
                health: {type: http, port: 8000, path: /healthz, failure_threshold: 2}
                route: {domain: Shop.Example.com, port: 8000, streaming: true}
            migrations:
              depends_on: [db]
              steps:
                - {version: 2, command: "psql -f 2.sql", service: db}
                - {version: 1, command: ["psql", "-f", "1.sql"]}
            """
        )
    )
    stack = load_descriptor(p, backend="docker")
    assert stack.project == "shop"
    web = stack.service("web")
    assert web.command == ("gunicorn", "app:app", "-b", "0.0.0.0:8000")
    assert web.restart.policy == "always"
    assert web.env == (("WORKERS", "4"),)
    assert web.health.failure_threshold == 2
    assert web.health.path == "/healthz"
    assert web.route.domain == "shop.example.com"
    assert web.route.streaming is True
    assert stack.service("db").health.failure_threshold == 3
    assert stack.migrations.name == "migrate"
    assert [s.version for s in stack.migrations.steps] == [1, 2]
    assert stack.migrations.steps[1].service == "db"
    assert stack.domains == ("shop.example.com",)


def test_missing_file():
    with pytest.raises(InvalidDescriptorError, match="not found"):
        load_descriptor("/nonexistent/stack.yaml")


def test_invalid_yaml(tmp_path):
    p = tmp_path / "stack.yaml"
    p.write_text("services: [unclosed\n")
    with pytest.raises(InvalidDescriptorError, match="YAML"):
        load_descriptor(p)


def test_unknown_field_rejected():
    with pytest.raises(InvalidDescriptorError):
        parse_descriptor(_base(db={"image": "postgres", "replicas": 3}))


def test_unknown_dependency_rejected():
    with pytest.raises(InvalidDescriptorError, match="unknown service 'cache'"):
        parse_descriptor(_base(web={"image": "w", "depends_on": ["cache"]}))


def test_bad_service_name():
    with pytest.raises(InvalidDescriptorError, match="Invalid service name"):
        parse_descriptor(_base(**{"Web App": {"image": "w"}}))


def test_service_needs_image_or_command():
    with pytest.raises(InvalidDescriptorError):
        parse_descriptor(_base(web={}))


def test_docker_backend_needs_images():
    data = _base(web={"command": "python -m http.server"})
    assert parse_descriptor(data, backend="process").service("web").image is None
    with pytest.raises(InvalidDescriptorError, match="needs an image"):
        parse_descriptor(data, backend="docker")


def test_http_probe_needs_port():
    with pytest.raises(InvalidDescriptorError):
        parse_descriptor(_base(web={"image": "w", "health": {"type": "http"}}))


def test_health_path_must_be_a_path():
    with pytest.raises(InvalidDescriptorError):
        parse_descriptor(_base(web={"image": "w", "health": {"type": "http", "port": 80, "path": "http://evil/"}}))


def test_duplicate_route_rejected():
    route = {"domain": "a.example.com", "port": 80}
    with pytest.raises(InvalidDescriptorError, match="both route"):
        parse_descriptor(_base(a={"image": "a", "route": route}, b={"image": "b", "route": route}))


def test_routed_names_colliding_as_upstreams_rejected():
    services = {
        "api-v1": {"image": "a", "route": {"domain": "a.example.com", "path": "/v1", "port": 80}},
        "api_v1": {"image": "b", "route": {"domain": "a.example.com", "path": "/v1b", "port": 80}},
    }
    with pytest.raises(InvalidDescriptorError, match="differ only"):
        parse_descriptor(_base(**services))

    # Unrouted services never become upstreams, so the same pair is fine there.
    stack = parse_descriptor(_base(**{"api-v1": {"image": "a"}, "api_v1": {"image": "b"}}))
    assert {s.name for s in stack.services} == {"api-v1", "api_v1"}


def test_migration_name_clash():
    data = _base(migrate={"image": "m"})
    data["migrations"] = {"steps": [{"version": 1, "command": "true"}]}
    with pytest.raises(InvalidDescriptorError, match="clashes"):
        parse_descriptor(data)


def test_duplicate_migration_versions():
    data = _base(db={"image": "db"})
    data["migrations"] = {"steps": [{"version": 1, "command": "a"}, {"version": 1, "command": "b"}]}
    with pytest.raises(InvalidDescriptorError):
        parse_descriptor(data)


def test_explicit_domains_are_normalised():
    data = _base(web={"image": "w"})
    data["domains"] = ["B.example.com", "a.example.com", "b.example.com"]
    assert parse_descriptor(data).domains == ("a.example.com", "b.example.com")


def test_example_stack_loads():
    import os

    path = os.path.join(os.path.dirname(os.path.dirname(__file__)), "examples", "stack.yaml")
    stack = load_descriptor(path, backend="docker")
    assert {s.name for s in stack.services} == {"db", "cache", "web", "worker", "beat"}
    assert stack.migrations.depends_on == ("db",)

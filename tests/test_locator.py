from types import SimpleNamespace

import docker
import pytest

import pg_backup_manager as pbm


def _container(name, image):
    return SimpleNamespace(name=name, attrs={"Config": {"Image": image}})


class FakeDockerClient:
    def __init__(self, containers):
        self.containers = SimpleNamespace(list=lambda: list(containers))


def test_single_candidate_is_selected():
    assert pbm.ContainerLocator.locate(["pg-main"]) == "pg-main"


def test_no_candidate_fails():
    with pytest.raises(pbm.TargetNotFound):
        pbm.ContainerLocator.locate([])


def test_several_candidates_need_a_selection():
    with pytest.raises(pbm.AmbiguousTarget) as excinfo:
        pbm.ContainerLocator.locate(["pg-b", "pg-a"])
    assert excinfo.value.candidates == ["pg-a", "pg-b"]


def test_selection_must_be_a_candidate():
    assert pbm.ContainerLocator.locate(["pg-a", "pg-b"], "pg-b") == "pg-b"
    with pytest.raises(pbm.TargetNotFound):
        pbm.ContainerLocator.locate(["pg-a", "pg-b"], "redis")


def test_discover_matches_name_or_image():
    client = FakeDockerClient([
        _container("app_db", "postgres:16-alpine"),
        _container("my-postgres", "bitnami/pg:15"),
        _container("cache", "redis:7"),
    ])
    assert pbm.ContainerLocator(client).discover() == ["app_db", "my-postgres"]


def test_resolve_keeps_running_configured_container():
    client = FakeDockerClient([_container("pg-a", "postgres"), _container("pg-b", "postgres")])
    assert pbm.ContainerLocator(client).resolve("pg-b") == "pg-b"


def test_resolve_redetects_when_configured_container_is_gone():
    client = FakeDockerClient([_container("pg-new", "postgres:16")])
    assert pbm.ContainerLocator(client).resolve("pg-old") == "pg-new"


def test_docker_outage_is_reported_as_missing_target():
    def _list():
        raise docker.errors.DockerException("Error while fetching server API version")

    client = SimpleNamespace(containers=SimpleNamespace(list=_list))
    with pytest.raises(pbm.TargetNotFound):
        pbm.ContainerLocator(client).discover()

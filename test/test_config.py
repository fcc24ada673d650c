"""Tests for environment configuration and backend selection."""

import numpy as np
import pytest

from mrgraph import HAS_GPU, ConfigurationError, HostBackend, get_backend
from mrgraph.config import check_env_flag, env_int, load_settings


def test_defaults(monkeypatch):
    for name in ["MRGRAPH_DEVICE", "MRGRAPH_HOST_DEVICES", "MRGRAPH_N_JOBS", "MRGRAPH_VERBOSE"]:
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.device == "auto"
    assert settings.host_devices == 1
    assert settings.n_jobs == 1
    assert settings.verbose is False


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("MRGRAPH_DEVICE", "CPU")
    monkeypatch.setenv("MRGRAPH_HOST_DEVICES", "4")
    monkeypatch.setenv("MRGRAPH_N_JOBS", "-1")
    monkeypatch.setenv("MRGRAPH_VERBOSE", "yes")

    settings = load_settings()

    assert settings.device == "cpu"
    assert settings.host_devices == 4
    assert settings.n_jobs == -1
    assert settings.verbose is True


@pytest.mark.parametrize(
    "name,value", [("MRGRAPH_DEVICE", "tpu"), ("MRGRAPH_HOST_DEVICES", "0")]
)
def test_invalid_settings(monkeypatch, name, value):
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError):
        load_settings()


def test_env_helpers(monkeypatch):
    monkeypatch.setenv("MRGRAPH_TEST_FLAG", "on")
    monkeypatch.setenv("MRGRAPH_TEST_INT", " ")
    assert check_env_flag("MRGRAPH_TEST_FLAG")
    assert not check_env_flag("MRGRAPH_TEST_MISSING")
    assert env_int("MRGRAPH_TEST_INT", 7) == 7

    monkeypatch.setenv("MRGRAPH_TEST_INT", "three")
    with pytest.raises(ValueError):
        env_int("MRGRAPH_TEST_INT", 7)


def test_host_backend_devices_from_environment(monkeypatch):
    monkeypatch.setenv("MRGRAPH_HOST_DEVICES", "3")

    backend = get_backend("cpu")

    assert isinstance(backend, HostBackend)
    assert backend.device_count() == 3


def test_host_backend_rejects_bad_input():
    backend = HostBackend(1)

    with pytest.raises(ConfigurationError):
        backend.asarray(np.zeros(5))
    with pytest.raises(ConfigurationError):
        HostBackend(0)


def test_unknown_device_name():
    with pytest.raises(ConfigurationError):
        get_backend("tpu")  # type: ignore[arg-type]


@pytest.mark.skipif(HAS_GPU, reason="GPU libraries are installed")
def test_gpu_requested_without_gpu_libraries():
    with pytest.raises(ImportError):
        get_backend("gpu")


@pytest.mark.skipif(HAS_GPU, reason="GPU libraries are installed")
def test_auto_falls_back_to_cpu():
    assert isinstance(get_backend("auto"), HostBackend)


if __name__ == "__main__":
    pytest.main([__file__])

# Root conftest to ensure pytest-asyncio is loaded early
import pytest_asyncio.plugin


def pytest_configure(config):
    # The entry point registers the plugin under the name "asyncio"
    manager = config.pluginmanager
    if not (manager.hasplugin("asyncio") or manager.is_registered(pytest_asyncio.plugin)):
        manager.register(pytest_asyncio.plugin, name="pytest_asyncio")

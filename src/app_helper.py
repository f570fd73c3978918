import os

import toml


def get_app_config():
    config_path = os.getenv(
        "EXAMPREP_CONFIG_PATH",
        os.path.join(os.getcwd(), "examprep.toml")
    )
    return toml.load(config_path)


def build_orchestrator(app_config=None):
    """讀 examprep.toml 的 [assistant] 區段，組出 ServiceOrchestrator。"""
    from assistant import ServiceOrchestrator, load_assistant_runtime_config

    app_config = app_config if app_config is not None else get_app_config()
    return ServiceOrchestrator.from_config(load_assistant_runtime_config(app_config))

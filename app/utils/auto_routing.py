from pathlib import Path
from typing import Dict

BASE_DIR = Path(__file__).resolve().parent.parent.parent

# Modules under applications/<app>/ that never declare Tortoise models.
NON_MODEL_FILES = {"schemas.py"}


def get_module(base_dir="routes"):
    base_path = BASE_DIR / base_dir
    module = [
        p.name
        for p in base_path.iterdir()
        if p.is_dir() and not p.name.startswith("__") and not p.name.startswith(".")
    ]
    return module


def get_model_modules(base_dir: str = "applications") -> list[str]:
    base_path = BASE_DIR / base_dir
    model_modules = []

    for app_dir in sorted(base_path.iterdir()):
        if not app_dir.is_dir() or app_dir.name.startswith("__"):
            continue

        model_modules.extend(
            f"{base_dir}.{app_dir.name}.{file.stem}"
            for file in sorted(app_dir.glob("*.py"))
            if file.is_file() and not file.name.startswith("__") and file.name not in NON_MODEL_FILES
        )
    return model_modules


def get_single_app_structure(base_dir: str = "applications") -> Dict[str, dict]:
    return {
        "models": {
            "models": get_model_modules(base_dir) + ["aerich.models"],
            "default_connection": "default",
        }
    }

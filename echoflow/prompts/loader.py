"""
Versioned prompt loader: reads prompts from echoflow/prompts/{version}/{component}.yaml.
PROMPT_VERSION (default v1) selects the version.
"""
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

import yaml

_PROMPTS_DIR = Path(__file__).resolve().parent


@lru_cache(maxsize=32)
def _load(component: str, version: str) -> Dict[str, str]:
    path = _PROMPTS_DIR / version / f"{component}.yaml"
    if not path.exists():
        raise FileNotFoundError(f"Prompt file not found: {path}")

    with path.open(encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    out: Dict[str, str] = {}
    for key in ("system", "user"):
        val = data.get(key)
        if val is not None:
            out[key] = val.strip() if isinstance(val, str) else str(val).strip()
    return out


def load_prompts(component: str, version: Optional[str] = None) -> Dict[str, str]:
    """Load the "system" and (optional) "user" templates for a component. User templates use <<NAME>> placeholders."""
    if version is None:
        from echoflow.core.config import settings

        version = settings.prompt_version
    return dict(_load(component, version))


def get_system_prompt(component: str, version: Optional[str] = None) -> str:
    prompts = load_prompts(component, version=version)
    if "system" not in prompts:
        raise ValueError(f"Component {component} has no 'system' prompt in version {version}")
    return prompts["system"]


def get_user_prompt(component: str, version: Optional[str] = None, **values: str) -> str:
    """Return the 'user' template with each <<KEY>> replaced by values[key.lower()]."""
    prompts = load_prompts(component, version=version)
    if "user" not in prompts:
        raise ValueError(f"Component {component} has no 'user' prompt in version {version}")
    text = prompts["user"]
    for key, value in values.items():
        text = text.replace(f"<<{key.upper()}>>", value)
    return text

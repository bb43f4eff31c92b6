"""Application configuration module for the translation engine."""
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import jsonschema
import yaml
from dotenv import load_dotenv

from ai_translator.backend_client import VENDOR_ENDPOINTS
from ai_translator.exceptions import UnconfiguredProvider
from ai_translator.logging_config import setup_logger
from ai_translator.models import ProviderConfig
from ai_translator.prompts import format_rules, language_name

PROVIDER_SCHEMA = {
    "type": "object",
    "properties": {
        "provider": {"type": "string", "enum": sorted(VENDOR_ENDPOINTS)},
        "model": {"type": "string", "minLength": 1},
        "temperature": {"type": "number", "minimum": 0, "maximum": 2},
        "max_tokens": {"type": "integer", "minimum": 1},
        "label": {"type": "string"},
        "base_url": {"type": "string"},
        "api_key_env": {"type": "string"},
        "thinking": {"type": "boolean"},
        "reasoning_budget": {"type": "integer", "minimum": 0},
    },
    "required": ["provider", "model"],
}

DEFAULT_TEMPERATURE_OVERRIDES = {'gpt-5': 1.0}


@dataclass
class AppConfig:
    """Application configuration dataclass."""
    # Core paths
    project_root: str

    # Locales
    source_locale: str = 'en'
    target_locales: List[str] = field(default_factory=list)
    language_codes: Dict[str, str] = field(default_factory=dict)
    name_to_code: Dict[str, str] = field(default_factory=dict)
    style_rules: Dict[str, List[str]] = field(default_factory=dict)
    precomputed_style_rules_text: Dict[str, str] = field(default_factory=dict)
    glossary: Dict[str, Dict[str, str]] = field(default_factory=dict)

    # Providers and consensus
    providers: List[ProviderConfig] = field(default_factory=list)
    judge: Optional[ProviderConfig] = None
    execution_mode: str = 'parallel'
    consensus_threshold: int = 2
    fallback_on_failure: bool = True
    temperature_overrides: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_TEMPERATURE_OVERRIDES))

    # Backend call settings
    retry_attempts: int = 2
    retry_base_delay: float = 1.0
    request_timeout: float = 30.0
    max_concurrent_api_calls: int = 4
    requests_per_minute: Optional[int] = 60

    # Processing settings
    max_tokens_per_chunk: int = 2000
    state_directory: Optional[str] = None
    plugins: Dict[str, Any] = field(default_factory=dict)
    dry_run: bool = False
    show_progress: bool = False


Notice = Tuple[int, str]


def _compute_project_root() -> str:
    """Directory holding the ``ai_translator`` package, where ``config.yaml`` and ``.env`` are looked up."""
    return os.path.dirname(os.path.dirname(os.path.realpath(__file__)))


def _load_dotenv_files(project_root: str) -> Optional[str]:
    """Load the first ``.env`` found in the project root or ``docker/`` and return its path."""
    for candidate in (os.path.join(project_root, '.env'), os.path.join(project_root, 'docker', '.env')):
        if os.path.exists(candidate):
            load_dotenv(candidate)
            return candidate
    return None


def _load_yaml_config(project_root: str, config_file: Optional[str] = None) -> Tuple[Dict[str, Any], List[Notice]]:
    """
    Read the YAML configuration.

    Logging is configured from this very file, so problems are collected as
    ``(level, message)`` notices and logged by the caller afterwards. Any
    problem yields an empty configuration.

    Returns:
        The configuration mapping and the notices.
    """
    if config_file is None:
        config_file = os.environ.get('TRANSLATOR_CONFIG_FILE', os.path.join(project_root, 'config.yaml'))
    config_file = os.path.abspath(config_file)

    if not os.path.exists(config_file):
        return {}, [(logging.WARNING, f"Configuration file '{config_file}' not found; using defaults. "
                                      f"Create config.yaml in '{project_root}' or set TRANSLATOR_CONFIG_FILE.")]
    if not os.access(config_file, os.R_OK):
        return {}, [(logging.ERROR, f"Configuration file '{config_file}' is not readable; using defaults")]

    try:
        with open(config_file, 'r', encoding='utf-8') as config_file_stream:
            loaded = yaml.safe_load(config_file_stream)
    except yaml.YAMLError as e:
        return {}, [(logging.ERROR, f"Invalid YAML in configuration file '{config_file}': {e}; using defaults")]
    except OSError as e:
        return {}, [(logging.ERROR, f"Could not read configuration file '{config_file}': {e}; using defaults")]

    if loaded is None:
        return {}, [(logging.WARNING, f"Configuration file '{config_file}' is empty; using defaults")]
    if not isinstance(loaded, dict):
        return {}, [(logging.ERROR, f"Configuration file '{config_file}' must contain a mapping; using defaults")]
    return loaded, [(logging.INFO, f"Loaded configuration from {config_file}")]


def _setup_logger_from_config(config: Mapping[str, Any]) -> logging.Logger:
    log_config = config.get('logging', {}) or {}
    return setup_logger(
        str(log_config.get('log_level', 'INFO')).upper(),
        log_config.get('log_file_path', 'logs/translation_log.log'),
        log_config.get('log_to_console', True),
    )


def _build_language_mappings(locales_list: List[Dict[str, str]]) -> Tuple[Dict[str, str], Dict[str, str]]:
    """``code -> name`` and ``lowercased name -> code`` for the supported locales."""
    named = [(locale.get('code'), locale.get('name')) for locale in locales_list]
    named = [(code, name) for code, name in named if code and name]
    return {code: name for code, name in named}, {name.lower(): code for code, name in named}


def _precompute_style_rules(style_rules: Dict[str, List[str]], language_codes: Dict[str, str]) -> Dict[str, str]:
    return {code: format_rules(language_name(code, language_codes), rules or []) for code, rules in style_rules.items()}


def parse_provider(data: Mapping[str, Any], where: str = 'providers') -> ProviderConfig:
    """
    Validate one provider dict and turn it into a :class:`ProviderConfig`.

    ``vendor`` is accepted as an alias of ``provider``.

    Raises:
        UnconfiguredProvider: The dict does not match :data:`PROVIDER_SCHEMA`.
    """
    if not isinstance(data, Mapping):
        raise UnconfiguredProvider(f"Entry in '{where}' must be a mapping, got {type(data).__name__}")
    candidate = dict(data)
    if 'provider' not in candidate and 'vendor' in candidate:
        candidate['provider'] = candidate.pop('vendor')
    try:
        jsonschema.validate(instance=candidate, schema=PROVIDER_SCHEMA)
    except jsonschema.ValidationError as e:
        raise UnconfiguredProvider(f"Invalid provider configuration in '{where}': {e.message}",
                                   details={'entry': dict(data)}) from e
    return ProviderConfig.from_dict(candidate)


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def build_app_config(config: Mapping[str, Any], project_root: Optional[str] = None) -> AppConfig:
    """Build an :class:`AppConfig` from an already loaded configuration mapping."""
    locales_list = config.get('supported_locales', []) or []
    language_codes, name_to_code = _build_language_mappings(locales_list)

    style_rules = config.get('style_rules', {}) or {}
    precomputed_style_rules_text = _precompute_style_rules(style_rules, language_codes)

    providers = [parse_provider(entry) for entry in config.get('providers', []) or []]
    judge = parse_provider(config['judge'], where='judge') if config.get('judge') else None

    execution_mode = os.environ.get('TRANSLATOR_EXECUTION_MODE', config.get('execution_mode', 'parallel'))
    if execution_mode not in ('parallel', 'sequential'):
        raise ValueError(f"execution_mode must be 'parallel' or 'sequential', got '{execution_mode}'")

    target_locales = config.get('target_locales')
    if target_locales is None:
        target_locales = [code for code in language_codes if code != config.get('source_locale', 'en')]

    temperature_overrides = dict(DEFAULT_TEMPERATURE_OVERRIDES)
    temperature_overrides.update(config.get('temperature_overrides', {}) or {})

    return AppConfig(
        project_root=project_root or _compute_project_root(),
        source_locale=config.get('source_locale', 'en'),
        target_locales=list(target_locales),
        language_codes=language_codes,
        name_to_code=name_to_code,
        style_rules=style_rules,
        precomputed_style_rules_text=precomputed_style_rules_text,
        glossary=config.get('glossary', {}) or {},
        providers=providers,
        judge=judge,
        execution_mode=execution_mode,
        consensus_threshold=int(config.get('consensus_threshold', 2)),
        fallback_on_failure=bool(config.get('fallback_on_failure', True)),
        temperature_overrides=temperature_overrides,
        retry_attempts=int(config.get('retry_attempts', 2)),
        retry_base_delay=float(config.get('retry_base_delay', 1.0)),
        request_timeout=float(config.get('request_timeout', 30)),
        max_concurrent_api_calls=int(config.get('max_concurrent_api_calls', 4)),
        requests_per_minute=config.get('requests_per_minute', 60),
        max_tokens_per_chunk=int(config.get('max_tokens_per_chunk', 2000)),
        state_directory=config.get('state_directory'),
        plugins=config.get('plugins', {}) or {},
        dry_run=_env_flag('TRANSLATOR_DRY_RUN', bool(config.get('dry_run', False))),
        show_progress=bool(config.get('show_progress', False)),
    )


def load_app_config(config_file: Optional[str] = None) -> AppConfig:
    """
    Load application configuration from YAML file and environment variables.

    Args:
        config_file: Explicit path of the YAML file. Defaults to
            ``TRANSLATOR_CONFIG_FILE`` or ``config.yaml`` in the project root.

    Returns:
        AppConfig: The loaded application configuration.

    Raises:
        UnconfiguredProvider: A provider or judge entry is invalid.
    """
    project_root = _compute_project_root()

    dotenv_path = _load_dotenv_files(project_root)
    config, notices = _load_yaml_config(project_root, config_file)

    logger = _setup_logger_from_config(config)
    for level, message in notices:
        logger.log(level, message)
    if dotenv_path:
        logger.info("Loaded environment variables from: %s", dotenv_path)
    else:
        logger.info("No .env file found in '%s' or its docker/ directory; using the system environment",
                    project_root)

    app_config = build_app_config(config, project_root)
    if app_config.dry_run:
        logger.info("Running in dry-run mode, backend clients will echo source texts")
    logger.info("Configured %d provider(s) in %s mode", len(app_config.providers), app_config.execution_mode)
    return app_config

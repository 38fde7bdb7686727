"""Configuration loader for repository ingestion policy.

The ingestion policy is static data: glob patterns excluded before any file
body is fetched, the source-extension allow-list, content length bounds and
the import-density ceiling used to skip barrel files.
"""

import os
import logging
from typing import Dict, Any, FrozenSet, Optional, Tuple
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CONFIG = {
    'ignore_paths': [
        '**/node_modules/**',
        '**/.git/**',
        '**/dist/**',
        '**/build/**',
        '**/.next/**',
        '**/coverage/**',
        '**/__snapshots__/**',
        '**/vendor/**',
        '**/__pycache__/**',
        '**/*.png',
        '**/*.jpg',
        '**/*.jpeg',
        '**/*.gif',
        '**/*.svg',
        '**/*.webp',
        '**/*.ico',
        '**/*.pdf',
        '**/*.lock',
        '**/package-lock.json',
        '**/yarn.lock',
        '**/pnpm-lock.yaml',
        '**/*.min.js',
        '**/*.min.css',
        '**/*.css.map',
        '**/*.js.map',
        '**/.env*',
        '**/*.md',
        '**/docs/**',
        '**/*.test.*',
        '**/*.spec.*',
        '**/test/**',
        '**/tests/**',
        '**/__tests__/**',
        '**/.github/**',
        '**/.gitlab-ci.yml',
        '**/.circleci/**',
        '**/migrations/**',
    ],
    'allowed_extensions': [
        '.ts', '.tsx', '.js', '.jsx', '.mjs', '.cjs',
        '.py', '.go', '.rs', '.java', '.kt', '.kts', '.rb', '.php', '.cs',
        '.c', '.h', '.cpp', '.cc', '.hpp', '.swift', '.scala',
        '.vue', '.svelte', '.sql', '.prisma', '.graphql', '.sh',
    ],
    'content_length': {
        'min': 100,
        'max': 100_000,
    },
    'max_import_ratio': 0.7,
}


class IngestPolicy:
    """Ingestion policy configuration manager."""

    def __init__(self, config_path: str = None, overrides: Optional[Dict[str, Any]] = None):
        self.config_path = config_path or self._get_default_config_path()
        self._config = self._load_config()
        if overrides:
            self._config = self._deep_merge(self._config, overrides)

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path."""
        possible_paths = [
            os.environ.get('REPOBRIEF_INGEST_POLICY'),
            os.path.join(os.getcwd(), 'config', 'ingest_policy.yaml'),
            os.path.join(Path(__file__).parent, 'ingest_policy.yaml'),
        ]

        for path in possible_paths:
            if path and os.path.exists(path):
                return path

        # Return the expected path even if it doesn't exist
        return os.path.join(Path(__file__).parent, 'ingest_policy.yaml')

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file or use defaults."""
        config = DEFAULT_CONFIG.copy()

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    file_config = yaml.safe_load(f) or {}

                config = self._deep_merge(config, file_config)

            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load ingest policy from {self.config_path}: {e}. Using defaults")
        else:
            logger.info(f"Ingest policy file not found at {self.config_path}, using defaults")

        return config

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key."""
        keys = key.split('.')
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    @property
    def ignore_patterns(self) -> Tuple[str, ...]:
        return tuple(self.get('ignore_paths', []))

    @property
    def allowed_extensions(self) -> FrozenSet[str]:
        return frozenset(ext.lower() for ext in self.get('allowed_extensions', []))

    @property
    def min_content_length(self) -> int:
        return int(self.get('content_length.min', 100))

    @property
    def max_content_length(self) -> int:
        return int(self.get('content_length.max', 100_000))

    @property
    def max_import_ratio(self) -> float:
        return float(self.get('max_import_ratio', 0.7))


# Global configuration instance
ingest_policy = IngestPolicy()

"""CLI entry point for the glmgate server."""

import argparse
import os

import uvicorn

from .config import load_config
from .model_catalog import list_models
from .server import create_app

_CONFIG_ENV_VAR = "GLMGATE_CONFIG_PATH"
_ENV_FILE_ENV_VAR = "GLMGATE_ENV_FILE"


def _app_factory():
    """Uvicorn factory for reload mode."""
    return create_app(
        os.getenv(_CONFIG_ENV_VAR, "config.yaml"),
        env_file=os.getenv(_ENV_FILE_ENV_VAR) or None,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="glmgate - OpenAI-compatible gateway for the GLM chat service"
    )
    parser.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (overrides config)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (overrides config)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload on Python file changes (dev only)",
    )
    parser.add_argument(
        "--env-file",
        type=str,
        default=None,
        help="Path to environment file (default: auto-load .env if available)",
    )
    return parser


def main():
    """Main entry point for the glmgate CLI."""
    args = build_parser().parse_args()

    config = load_config(args.config, env_file=args.env_file)

    host = args.host or config.serve.host
    port = args.port or config.serve.port

    print(f"Starting glmgate on {host}:{port}")
    print(f"Upstream: {config.chat_url}")
    print(f"Models: {', '.join(spec.name for spec in list_models())}")
    print(f"Configured credentials: {len(config.credentials.tokens)}"
          f" (guest fallback {'on' if config.credentials.guest_enabled else 'off'})")
    print(f"Think mode: {config.transform.think_mode.value}")
    if args.env_file:
        print(f"Environment file: {args.env_file}")
    print("\nEndpoints:")
    print(f"  - Health: http://{host}:{port}/health")
    print(f"  - Models: http://{host}:{port}/v1/models")
    print(f"  - Pool Status: http://{host}:{port}/v1/pool-status")
    print(f"  - Chat: http://{host}:{port}/v1/chat/completions")

    if args.reload:
        os.environ[_CONFIG_ENV_VAR] = args.config
        if args.env_file:
            os.environ[_ENV_FILE_ENV_VAR] = args.env_file
        else:
            os.environ.pop(_ENV_FILE_ENV_VAR, None)
        print("\nAuto-reload: enabled")
        uvicorn.run(
            "glmgate.cli:_app_factory",
            host=host,
            port=port,
            reload=True,
            factory=True,
        )
    else:
        app = create_app(args.config, env_file=args.env_file, preloaded_config=config)
        uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()

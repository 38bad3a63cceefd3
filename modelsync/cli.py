"""
modelsync CLI - Command line interface for registry synchronization.
"""

import logging
from pathlib import Path
from typing import Optional

import click

from .config import Config, DEFAULT_DATA_DIR
from .errors import ConfigError
from .transfer.cli import register_commands


def setup_logging(verbose: bool = False):
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler()]
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config-dir', type=click.Path(file_okay=False), help=f'Data directory (default {DEFAULT_DATA_DIR})')
@click.pass_context
def main(ctx, verbose: bool, config_dir: Optional[str]):
    """modelsync - keep model registries in step"""
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    setup_logging(verbose)

    try:
        ctx.obj['config'] = Config.load(Path(config_dir) if config_dir else None)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e


register_commands(main)


if __name__ == "__main__":
    main()

"""Command-line interface for the VKGL consensus tool."""

import sys
from pathlib import Path

import click

from .cache_manager import MappingCache, NCCache
from .config import Config, create_example_config, get_default_config_path, get_run_date
from .error_handler import EXIT_ERROR_ARGS_NOT_UNDERSTOOD, RunErrorHandler, VKGLError
from .input_parser import ConsensusFileReader, ConsensusFileWriter, read_transcript_file
from .logging_config import get_logger, setup_logging
from .oracles import VariantValidatorClient
from .pipeline import Pipeline, RunContext
from .store import SQLiteVariantStore
from .verify import CacheVerifier

logger = get_logger('cli')


def echo(message: str, err: bool = False) -> None:
    """Print unless running quietly; errors are always printed."""
    ctx = click.get_current_context(silent=True)
    quiet = bool(ctx and ctx.obj and ctx.obj.get('quiet'))
    if err or not quiet:
        click.echo(message, err=err)


def _load_config(ctx: click.Context, config_file, **cli_args) -> Config:
    """Load settings, apply overrides and start logging."""
    config_path = Path(config_file) if config_file else get_default_config_path()
    cfg = Config.from_file(config_path)
    cfg.merge_env_vars()
    cfg.merge_cli_args(**cli_args)
    cfg.validate()
    
    setup_logging(
        log_level='DEBUG' if ctx.obj['verbose'] else 'INFO',
        log_dir=cfg.output.log_dir,
        quiet=ctx.obj['quiet'],
    )
    logger.debug(f"Using settings from {config_path}")
    return cfg


def _fail(error: VKGLError) -> None:
    echo(f"Error: {error}", err=True)
    sys.exit(error.exit_code)


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--quiet', '-q', is_flag=True, help='Suppress all output except errors')
@click.version_option(package_name='vkgl-consensus')
@click.pass_context
def cli(ctx, verbose, quiet):
    """VKGL consensus tool.
    
    Normalizes the variant classifications of the diagnostic laboratories,
    computes their consensus and synchronizes it into the variant store.
    
    Examples:
        vkgl-consensus process vkgl_consensus_2024-04.tsv
        vkgl-consensus verify-cache
    """
    if quiet and verbose:
        click.echo("Error: Cannot use both --quiet and --verbose", err=True)
        sys.exit(EXIT_ERROR_ARGS_NOT_UNDERSTOOD)
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    ctx.obj['quiet'] = quiet


@cli.command()
@click.argument('input_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--config', 'config_file', type=click.Path(exists=True), help='Settings file path')
@click.option('--refseq-build', type=click.Choice(['hg19', 'hg38'], case_sensitive=False),
              help='Genome build of the input')
@click.option('--store', 'store_path', type=click.Path(), help='Variant store database')
@click.option('--delete/--no-delete', 'delete_missing', default=None,
              help='Hide stored variants that are no longer reported')
@click.option('--reference-fasta', type=click.Path(exists=True), help='Genome FASTA used to detect duplications')
@click.option('--report-dir', type=click.Path(file_okay=False), help='Directory for the run reports')
@click.option('--no-reports', is_flag=True, help='Do not write the run reports')
@click.pass_context
def process(ctx, input_file, config_file, refseq_build, store_path, delete_missing,
            reference_fasta, report_dir, no_reports):
    """Process a consensus file into the variant store."""
    try:
        cfg = _load_config(ctx, config_file, refseq_build=refseq_build, store_path=store_path,
                           delete_missing=delete_missing, reference_fasta=reference_fasta,
                           report_dir=report_dir)
        context = RunContext.from_config(cfg, RunErrorHandler())
        try:
            summary = Pipeline(context).run(input_file, write_reports=not no_reports)
        finally:
            context.close()
    except VKGLError as e:
        _fail(e)
        return
    
    echo(f"Variants read         : {summary.records_read}")
    echo(f"Variants grouped      : {summary.variants_grouped}")
    echo(f"Variants lost         : {summary.lost_variants}")
    for status, count in sorted(summary.status_counts.items()):
        echo(f"  {status:<20}: {count}")
    stats = summary.sync
    echo(f"Store: {stats.created} created, {stats.updated} updated, {stats.skipped} unchanged, "
         f"{stats.tombstoned} hidden, {stats.renormalized} renormalized")
    for name, path in summary.reports.items():
        echo(f"Report {name}: {path}")
    if summary.warnings:
        echo(f"Warning(s) count: {summary.warnings}", err=True)
        for error_type, count in sorted(summary.warnings_by_type.items()):
            echo(f"  {error_type:<26}: {count}", err=True)
    sys.exit(summary.exit_code)


@cli.command('init-store')
@click.option('--config', 'config_file', type=click.Path(exists=True), help='Settings file path')
@click.option('--refseq-build', type=click.Choice(['hg19', 'hg38'], case_sensitive=False),
              help='Genome build of the stored variants')
@click.option('--store', 'store_path', type=click.Path(), help='Variant store database')
@click.pass_context
def init_store(ctx, config_file, refseq_build, store_path):
    """Record the genome build and register the center accounts in the store."""
    try:
        cfg = _load_config(ctx, config_file, refseq_build=refseq_build, store_path=store_path)
        store = SQLiteVariantStore(cfg.store.path)
        try:
            store.initialize(cfg.store.refseq_build, cfg.centers)
            accounts = store.accounts()
        finally:
            store.close()
    except VKGLError as e:
        _fail(e)
        return
    echo(f"Variant store {cfg.store.path}: {cfg.store.refseq_build}, {len(accounts)} accounts")


@cli.command('load-transcripts')
@click.argument('transcript_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--config', 'config_file', type=click.Path(exists=True), help='Settings file path')
@click.option('--store', 'store_path', type=click.Path(), help='Variant store database')
@click.pass_context
def load_transcripts(ctx, transcript_file, config_file, store_path):
    """Register the transcripts the store holds mappings for.
    
    TRANSCRIPT_FILE has one versioned accession per line, optionally followed
    by a tab and the gene symbol.
    """
    try:
        cfg = _load_config(ctx, config_file, store_path=store_path)
        transcripts = read_transcript_file(transcript_file)
        store = SQLiteVariantStore(cfg.store.path)
        try:
            added = store.register_transcripts(transcripts)
            total = len(store.known_transcripts())
        finally:
            store.close()
    except VKGLError as e:
        _fail(e)
        return
    echo(f"Transcripts added: {added}, known: {total}")


@cli.command('verify-cache')
@click.option('--config', 'config_file', type=click.Path(exists=True), help='Settings file path')
@click.option('--refseq-build', type=click.Choice(['hg19', 'hg38'], case_sensitive=False),
              help='Genome build of the cached variants')
@click.pass_context
def verify_cache(ctx, config_file, refseq_build):
    """Verify the NC cache with VariantValidator and extend the mapping cache."""
    try:
        cfg = _load_config(ctx, config_file, refseq_build=refseq_build)
        error_handler = RunErrorHandler()
        validator = VariantValidatorClient(cfg.oracle)
        try:
            verifier = CacheVerifier(
                NCCache(cfg.cache.nc_cache, error_handler),
                MappingCache(cfg.cache.mapping_cache, error_handler),
                validator,
                cfg.store.refseq_build,
                error_handler,
                cfg.output.progress_interval_seconds,
            )
            summary = verifier.run()
        finally:
            validator.close()
    except VKGLError as e:
        _fail(e)
        return
    
    echo(f"Variants seen   : {summary.variants_seen}")
    echo(f"Mappings added  : {summary.mappings_added}")
    echo(f"Disagreements   : {summary.disagreements}")
    if error_handler.warning_count:
        echo(f"Warning(s) count: {error_handler.warning_count}", err=True)
    sys.exit(error_handler.exit_code())


@cli.command('write-consensus')
@click.argument('output_file', type=click.Path(dir_okay=False))
@click.argument('input_files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
def write_consensus(output_file, input_files):
    """Merge consensus-format files into one consensus file.
    
    Rows without VCF fields may give a genomic description in a
    gdna_normalized column instead.
    """
    reader = ConsensusFileReader(allow_genomic=True)
    writer = ConsensusFileWriter()
    try:
        for input_file in input_files:
            writer.add_records(reader.read(input_file).records)
    except VKGLError as e:
        _fail(e)
        return
    lines = writer.write(output_file)
    echo(f"Wrote {lines} lines for {len(writer.centers)} centers to {output_file}")
    if writer.conflict_count:
        echo(f"Internal conflicts: {writer.conflict_count}", err=True)


@cli.command('generate-config')
@click.argument('path', type=click.Path(dir_okay=False), required=False)
def generate_config(path):
    """Write an example settings file."""
    config_path = create_example_config(Path(path) if path else None)
    echo(f"Generated example configuration file: {config_path}")


@cli.command('run-date')
def run_date():
    """Print the label of the current quarterly run."""
    click.echo(get_run_date())


def main():
    cli(obj={})


if __name__ == '__main__':
    main()

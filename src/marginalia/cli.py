"""Command-line interface for marginalia (local Hypothesis annotation mirror)."""

import functools
from pathlib import Path

import click
import yaml

from . import __version__
from .config import Config, DEFAULT_CONFIG, get_config_path, load_config, store_config
from .database import get_database
from .errors import ConfigError, DoingNothing, HypothesisError, MarginaliaError, SyncError
from .filters import FilterSpec, filter_annotations, parse_date
from .hierarchy import GROUPABLE, OrderBy, build_tree
from .hypothesis import HypothesisClient
from .index import IndexEngine
from .logging_config import configure_quiet_mode, enable_debug_mode
from .models import Annotation
from .sync import SyncEngine
from .tagging import add_tag, delete_annotations, remove_tag


class MarginaliaGroup(click.Group):
    """Click group that reports domain errors as a clean CLI error."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except MarginaliaError as e:
            raise click.ClickException(str(e)) from e


@click.group(cls=MarginaliaGroup)
@click.version_option(version=__version__, prog_name="marginalia")
@click.option('--config', 'config_path', type=click.Path(dir_okay=False, path_type=Path),
              envvar='MARGINALIA_CONFIG',
              help="Config file (default ~/.marginalia/config.yaml, or $MARGINALIA_CONFIG)")
@click.option('--verbose', '-v', is_flag=True, help="Debug logging to stderr")
@click.pass_context
def main(ctx, config_path, verbose):
    """Marginalia - a local, searchable mirror of your Hypothesis annotations."""
    ctx.ensure_object(dict)
    if verbose:
        enable_debug_mode()
    else:
        configure_quiet_mode()
    ctx.obj['config_path'] = config_path


def _get_config(ctx) -> Config:
    if 'config' not in ctx.obj:
        ctx.obj['config'] = Config.from_dict(load_config(ctx.obj.get('config_path')))
    return ctx.obj['config']


def _get_client(config: Config) -> HypothesisClient:
    config.require_credentials()
    return HypothesisClient(
        config.username,
        config.api_key,
        api_url=config.api_url,
        timeout=config.timeout,
    )


def filter_options(f):
    """Shared options that build a FilterSpec."""
    options = [
        click.option('--from', 'from_date', help="Only annotations created at/after this date "
                                                 "(YYYY-MM-DD, 'today', 'N days ago')"),
        click.option('--before', help="Only annotations created before this date"),
        click.option('--include-updated', '-i', is_flag=True,
                     help="Compare the updated date instead of the created date"),
        click.option('--uri', default='', help="Only annotations with this pattern in their URL"),
        click.option('--any', 'any_text', default='',
                     help="Only annotations with this pattern in their quote, tags, text or URL"),
        click.option('--quote', default='', help="Only annotations with this pattern in their quote"),
        click.option('--text', default='', help="Only annotations with this pattern in their text"),
        click.option('--tags', multiple=True, help="Only annotations with these tags (repeatable)"),
        click.option('--and', 'and_', is_flag=True, help="Require all --tags rather than any"),
        click.option('--exclude-tags', multiple=True, help="Skip annotations with these tags"),
        click.option('--page-notes', is_flag=True, help="Only page notes"),
        click.option('--annotations', 'only_annotations', is_flag=True,
                     help="Only in-document annotations (not page notes)"),
        click.option('--not', 'not_', is_flag=True,
                     help="Invert the whole filter: keep what doesn't match"),
        click.option('--desc', 'descending', is_flag=True, help="Newest first"),
    ]

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        spec_args = {name: kwargs.pop(name) for name in (
            'from_date', 'before', 'include_updated', 'uri', 'any_text', 'quote', 'text',
            'tags', 'and_', 'exclude_tags', 'page_notes', 'only_annotations', 'not_',
            'descending',
        )}
        kwargs['spec'] = _build_spec(**spec_args)
        return f(*args, **kwargs)

    for option in reversed(options):
        wrapper = option(wrapper)
    return wrapper


def _build_spec(from_date, before, include_updated, uri, any_text, quote, text, tags,
                and_, exclude_tags, page_notes, only_annotations, not_, descending) -> FilterSpec:
    try:
        return FilterSpec(
            from_date=parse_date(from_date) if from_date else None,
            before=parse_date(before) if before else None,
            include_updated=include_updated,
            uri=uri,
            any=any_text,
            quote=quote,
            text=text,
            tags=tuple(tags),
            and_=and_,
            exclude_tags=tuple(exclude_tags),
            page_notes=page_notes,
            annotations=only_annotations,
            not_=not_,
            descending=descending,
        )
    except ValueError as e:
        raise click.UsageError(str(e)) from e


def _format_annotation(annotation: Annotation) -> str:
    lines = [
        click.style(annotation.id, bold=True)
        + f"  {annotation.created:%Y-%m-%d %H:%M}  {annotation.uri}",
    ]
    if annotation.tags:
        lines.append("  tags: " + ", ".join(annotation.tags))
    for quote in annotation.quotes:
        lines.append("  > " + quote.replace("\n", " ")[:200])
    if annotation.text:
        lines.append("  " + annotation.text.replace("\n", " ")[:200])
    return "\n".join(lines)


@main.command()
@click.pass_context
def sync(ctx):
    """Sync newly added or updated Hypothesis annotations."""
    config = _get_config(ctx)
    with _get_client(config) as client, get_database(config.db_dir) as db:
        engine = SyncEngine(IndexEngine(db), client, config.scope(), config.page_size)
        try:
            result = engine.sync()
        except SyncError as e:
            if e.result is not None:
                click.echo(
                    f"Before failing: added {e.result.added}, updated {e.result.updated}, "
                    f"ignored {e.result.ignored}",
                    err=True,
                )
            raise

    click.echo(f"Added {result.added} annotations")
    click.echo(f"Updated {result.updated} annotations")
    if result.ignored:
        click.echo(f"Ignored {result.ignored} annotations")


@main.command('reset-sync')
@click.pass_context
def reset_sync(ctx):
    """Forget the sync position; the next sync re-reads everything."""
    config = _get_config(ctx)
    with get_database(config.db_dir) as db:
        SyncEngine(IndexEngine(db), None, config.scope()).reset()
    click.echo("Sync cursor reset.")


@main.command()
@filter_options
@click.argument('annotation_id', required=False)
@click.option('--ids', 'ids_only', is_flag=True, help="Print only annotation IDs")
@click.pass_context
def view(ctx, annotation_id, ids_only, spec):
    """View (optionally filtered) annotations, or one annotation by ID."""
    if annotation_id and spec != FilterSpec():
        raise click.UsageError("Give either an annotation ID or filter options, not both")
    config = _get_config(ctx)
    with get_database(config.db_dir) as db:
        index = IndexEngine(db)
        if annotation_id:
            annotations = [index.get(annotation_id)]
        else:
            annotations = filter_annotations(index, spec)

    if not annotations:
        click.echo("No annotations found.")
        return
    for annotation in annotations:
        if ids_only:
            click.echo(annotation.id)
        else:
            click.echo(_format_annotation(annotation))
            click.echo()


@main.command('tags')
@click.pass_context
def list_tags(ctx):
    """List tags with their annotation counts."""
    config = _get_config(ctx)
    with get_database(config.db_dir) as db:
        counts = IndexEngine(db).all_tags()

    if not counts:
        click.echo("No tags found.")
        return
    width = max(len(tag) for tag in counts)
    for tag, count in sorted(counts.items(), key=lambda item: (-item[1], item[0])):
        click.echo(f"  {tag.ljust(width)}  {count}")


@main.command()
@filter_options
@click.argument('tag')
@click.option('--delete', '-d', 'remove', is_flag=True,
              help="Remove the tag from the filtered annotations instead of adding it")
@click.pass_context
def tag(ctx, tag, remove, spec):
    """Add TAG to (or remove it from) the filtered annotations."""
    config = _get_config(ctx)
    with _get_client(config) as client, get_database(config.db_dir) as db:
        index = IndexEngine(db)
        annotations = filter_annotations(index, spec)
        if remove:
            changed = remove_tag(index, client, annotations, tag)
        else:
            changed = add_tag(index, client, annotations, tag)

    verb = "Removed" if remove else "Added"
    click.echo(f"{verb} {tag!r} on {changed} annotations")


@main.command()
@filter_options
@click.option('--remote', '-a', is_flag=True,
              help="Also delete from Hypothesis. Without this, the annotations are tagged "
                   "so that future syncs skip them.")
@click.option('--force', '-f', is_flag=True, help="Don't ask for confirmation")
@click.pass_context
def delete(ctx, remote, force, spec):
    """Delete the filtered annotations from the mirror (and optionally Hypothesis)."""
    config = _get_config(ctx)
    with _get_client(config) as client, get_database(config.db_dir) as db:
        index = IndexEngine(db)
        annotations = filter_annotations(index, spec)
        if not annotations:
            click.echo("No annotations found.")
            return
        where = " from Hypothesis too" if remote else ""
        if not force and not click.confirm(f"Delete {len(annotations)} annotations{where}?"):
            raise DoingNothing()
        count = delete_annotations(index, client, annotations, remote=remote)

    click.echo(click.style(f"✓ Deleted {count} annotations.", fg='green'))


@main.command()
@filter_options
@click.pass_context
def tree(ctx, spec):
    """Show how the filtered annotations group under the configured hierarchy."""
    config = _get_config(ctx)
    try:
        hierarchy = [OrderBy(level) for level in config.hierarchy]
        sort = [OrderBy(key) for key in config.sort]
    except ValueError as e:
        raise ConfigError(f"Bad tags.hierarchy / tags.sort setting: {e}") from e
    for level in hierarchy:
        if level not in GROUPABLE:
            raise ConfigError(f"tags.hierarchy can't group by {level.value}")

    with get_database(config.db_dir) as db:
        annotations = filter_annotations(IndexEngine(db), spec)

    root = build_tree(annotations, hierarchy, config.nested_separator, sort)
    for node in root.leaves():
        path = "/".join(node.path) or "(all)"
        click.echo(f"  {path}  ({len(node.annotations)})")


@main.command()
@click.pass_context
def status(ctx):
    """Show database location, counts and sync positions."""
    config = _get_config(ctx)
    with get_database(config.db_dir) as db:
        stats = db.get_stats()

    click.echo(f"Database: {config.db_dir}")
    click.echo(f"  Annotations: {stats['annotations']}")
    click.echo(f"  Tags: {stats['tags']}")
    if stats['cursors']:
        click.echo("\nSynced up to:")
        for scope, cursor in stats['cursors'].items():
            click.echo(f"  {scope}: {cursor}")
    else:
        click.echo("\nNever synced.")


@main.command()
@click.pass_context
def check(ctx):
    """Verify the tag index agrees with the stored annotations."""
    config = _get_config(ctx)
    with get_database(config.db_dir) as db:
        problems = IndexEngine(db).check_consistency()

    if not problems:
        click.echo(click.style("✓ Index is consistent.", fg='green'))
        return
    for problem in problems:
        click.echo(f"  {problem}")
    raise click.ClickException(f"{len(problems)} index problems found; run 'clear' and 'sync'")


@main.command()
@click.option('--force', '-f', is_flag=True, help="Don't ask for confirmation")
@click.pass_context
def clear(ctx, force):
    """Clear all mirrored annotations, tags and sync positions."""
    config = _get_config(ctx)
    if not force and not click.confirm("Clear all data?", default=False):
        raise DoingNothing()
    with get_database(config.db_dir) as db:
        IndexEngine(db).clear()
    click.echo("Cleared.")


@main.group('config')
def config_group():
    """Manage the configuration file."""


@config_group.command('where')
@click.pass_context
def config_where(ctx):
    """Print the location of the config file in use."""
    click.echo(ctx.obj.get('config_path') or get_config_path())


@config_group.command('get')
@click.pass_context
def config_get(ctx):
    """Print the current configuration (API key hidden)."""
    data = load_config(ctx.obj.get('config_path'))
    hypothesis = dict(data.get('hypothesis') or {})
    if hypothesis.get('api_key'):
        hypothesis['api_key'] = '********'
    data['hypothesis'] = hypothesis
    click.echo(yaml.dump(data, default_flow_style=False, sort_keys=False).rstrip())


@config_group.command('authorize')
@click.option('--username', prompt="Hypothesis username")
@click.option('--api-key', prompt="Hypothesis developer API key", hide_input=True)
@click.pass_context
def config_authorize(ctx, username, api_key):
    """Check Hypothesis credentials and save them to the config file."""
    data = load_config(ctx.obj.get('config_path'))
    hypothesis = data.get('hypothesis') or {}
    client = HypothesisClient(
        username,
        api_key,
        api_url=hypothesis.get('api_url') or DEFAULT_CONFIG['hypothesis']['api_url'],
    )
    with client:
        try:
            authorized = client.authorize()
        except HypothesisError as e:
            if e.status_code not in (401, 403):
                raise
            authorized = False
    if not authorized:
        raise ConfigError("Could not authorize your Hypothesis credentials, please try again.")

    hypothesis.update(username=username, api_key=api_key)
    data['hypothesis'] = hypothesis
    path = store_config(data, ctx.obj.get('config_path'))
    click.echo(click.style(f"✓ Authorized as {client.user}. Saved to {path}", fg='green'))


@config_group.command('default')
@click.argument('file', required=False, type=click.Path(dir_okay=False, path_type=Path))
def config_default(file):
    """Print the default configuration, or write it to FILE."""
    text = yaml.dump(DEFAULT_CONFIG, default_flow_style=False, sort_keys=False)
    if file is None:
        click.echo(text.rstrip())
        return
    if file.exists():
        raise click.ClickException(f"{file} already exists")
    file.parent.mkdir(parents=True, exist_ok=True)
    file.write_text(text)
    click.echo(f"Wrote default configuration to {file}")
    click.echo("Use it with: export MARGINALIA_CONFIG=" + str(file.resolve()))


if __name__ == '__main__':
    main()

"""
featgraph Command Line Interface

Main entry point for the featgraph CLI.
"""

import functools
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from featgraph.config import PRIORITIES, load_config
from featgraph.exceptions import FeatgraphError, get_error_code
from featgraph.gitrepo import GitRepo
from featgraph.graph import RelationshipGraph, TreeNode
from featgraph.logging_config import ENV_VARS, setup_logging
from featgraph.models import FeatureState, format_time
from featgraph.prompts import ConsolePrompter, Prompter
from featgraph.storage import FeatureStore, Scope
from featgraph.validator import Severity, Validator
from featgraph.workflow import WorkflowEngine

console = Console()
err_console = Console(stderr=True)

STATE_STYLES = {
    FeatureState.OPEN: "cyan",
    FeatureState.IN_PROGRESS: "yellow",
    FeatureState.CLOSED: "green",
}


class AppContext:
    """Repository handles shared by every command, built on first use."""

    def __init__(self, path: Optional[Path] = None, interactive: bool = True):
        self.path = path
        self.interactive = interactive
        self._repo = None
        self._store = None

    @property
    def repo(self) -> GitRepo:
        if self._repo is None:
            self._repo = GitRepo.discover(self.path)
        return self._repo

    @property
    def store(self) -> FeatureStore:
        if self._store is None:
            self._store = FeatureStore(self.repo, load_config(self.repo.root))
        return self._store

    @property
    def prompter(self) -> Prompter:
        if self.interactive and sys.stdin.isatty():
            return ConsolePrompter(console)
        return Prompter()

    def engine(self) -> WorkflowEngine:
        return WorkflowEngine(self.repo, self.store, prompter=self.prompter)

    def graph(self) -> RelationshipGraph:
        return RelationshipGraph(self.store)


pass_app = click.make_pass_decorator(AppContext)


def handle_errors(func):
    """Render featgraph errors and exit with their family's code."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except FeatgraphError as e:
            err_console.print(f"[red]✗[/red] {escape(e.message)}")
            if e.details:
                err_console.print(f"  [dim]{escape(e.details)}[/dim]")
            if e.remediation:
                err_console.print(f"  [yellow]To fix:[/yellow] {escape(e.remediation)}")
            sys.exit(get_error_code(e))
        except KeyboardInterrupt:
            err_console.print("\n[yellow]Interrupted[/yellow]")
            sys.exit(130)

    return wrapper


def _state(state: FeatureState) -> str:
    style = STATE_STYLES.get(state, "white")
    return f"[{style}]{state.value}[/{style}]"


def _env_help() -> str:
    lines = ["\b", "Environment variables:"]
    for name, info in ENV_VARS.items():
        lines.append(f"  {name:<24}{info['description']}")
    return "\n".join(lines)


@click.group(epilog=_env_help())
@click.version_option(package_name="featgraph")
@click.option("--repo", "repo_path", type=click.Path(file_okay=False, path_type=Path), help="Repository path (default: current directory)")
@click.option("--yes", "-y", is_flag=True, help="Never prompt; take default answers")
@click.option("--verbose", "-v", is_flag=True, help="Show progress messages")
@click.pass_context
def main(ctx, repo_path: Optional[Path], yes: bool, verbose: bool):
    """featgraph: feature tracking and relationship graphs inside git"""
    setup_logging(level=logging.INFO if verbose else None)
    ctx.obj = AppContext(repo_path, interactive=not yes)


@main.command()
@click.option("--mode", type=click.Choice(["branch-per-feature", "trunk-based"]), help="Workflow mode")
@click.option("--base-branch", help="Branch merges land on")
@pass_app
@handle_errors
def init(app: AppContext, mode: Optional[str], base_branch: Optional[str]):
    """Set up .featgraph/ in the current repository."""
    store = app.store
    if store.is_initialized:
        console.print("[yellow]![/yellow] featgraph is already initialized here")
        return

    workflow = {}
    if mode:
        workflow["mode"] = mode
    if base_branch:
        workflow["base_branch"] = base_branch
    paths = store.initialize({"workflow": workflow} if workflow else None)

    config = load_config(app.repo.root)
    if config.auto_commit:
        app.repo.add(paths)
        app.repo.commit("featgraph: initialize", paths=paths)
    console.print(f"[green]✓[/green] Initialized featgraph in {app.repo.root}")


@main.command()
@click.argument("name")
@click.option("--description", "-d", default="", help="Feature description")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--category", default="", help="Free-form category")
@click.option("--priority", type=click.Choice(PRIORITIES), help="Priority")
@click.option("--type", "feature_type", default="", help="Feature type")
@click.option("--same-branch", is_flag=True, help="Stay on the current branch")
@click.option("--parent", help="Feature this one is contained by")
@pass_app
@handle_errors
def create(app: AppContext, name, description, tags, category, priority, feature_type, same_branch, parent):
    """Create a feature (and its branch in branch-per-feature mode).

    Examples:
        featgraph create "User login" --tag auth
        featgraph create "Password reset" --parent "User login" --same-branch
    """
    result = app.engine().create(
        name,
        description=description,
        tags=tags,
        category=category,
        priority=priority or "",
        type=feature_type,
        same_branch=same_branch,
        parent=parent,
    )
    if result.reused:
        console.print(f"[yellow]![/yellow] Using existing feature '{result.feature.name}' ({result.feature.id})")
        return
    console.print(f"[green]✓[/green] Created '{result.feature.name}' ({result.feature.id})")
    if result.created_branch:
        console.print(f"  Switched to new branch [bold]{result.branch}[/bold]")


def _parse_meta(ctx, param, values):
    metadata = {}
    for value in values:
        key, sep, text = value.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected key=value, got '{value}'")
        metadata[key.strip()] = text
    return metadata


@main.command()
@click.argument("identifier")
@click.option("--name", help="New name (renames the record file)")
@click.option("--description", "-d", help="New description")
@click.option("--priority", type=click.Choice(PRIORITIES), help="New priority")
@click.option("--type", "feature_type", help="New feature type")
@click.option("--category", help="New category")
@click.option("--tag", "tags", multiple=True, help="Replace the tags (repeatable)")
@click.option("--meta", "metadata", multiple=True, callback=_parse_meta, help="Set metadata key=value (repeatable)")
@pass_app
@handle_errors
def update(app: AppContext, identifier, name, description, priority, feature_type, category, tags, metadata):
    """Edit a feature on whichever branch holds it.

    Example:
        featgraph update "User login" --name "Sign in" --priority high
    """
    result = app.engine().update(
        identifier,
        name=name,
        description=description,
        priority=priority,
        type=feature_type,
        category=category,
        tags=tags or None,
        metadata=metadata,
    )
    if not result.changed:
        console.print(f"[dim]'{escape(result.feature.name)}' already up to date[/dim]")
        return
    console.print(
        f"[green]✓[/green] Updated '{escape(result.feature.name)}' on {result.branch}: "
        + ", ".join(result.changed)
    )
    for other in result.renamed_references:
        console.print(f"  [dim]refreshed reference in {escape(other.name)}[/dim]")


@main.command()
@click.argument("identifier")
@pass_app
@handle_errors
def delete(app: AppContext, identifier):
    """Delete a feature and the relationships pointing at it."""
    if app.interactive:
        feature = app.store.find_by_name_or_id(identifier)
        if not app.prompter.confirm(f"Delete '{feature.name}' ({feature.id[:8]})?"):
            console.print("[dim]Cancelled[/dim]")
            return
    result = app.engine().delete(identifier)
    console.print(f"[green]✓[/green] Deleted '{escape(result.feature.name)}' from {result.branch}")
    if result.cleaned:
        console.print(f"  Removed relationships from {len(result.cleaned)} feature(s)")


@main.command("list")
@click.option("--current", is_flag=True, help="Only features in the working tree")
@click.option("--state", type=click.Choice([s.value for s in FeatureState]), help="Filter by state")
@click.option("--tag", help="Filter by tag")
@pass_app
@handle_errors
def list_features(app: AppContext, current: bool, state: Optional[str], tag: Optional[str]):
    """List features across all branches."""
    scope = Scope.CURRENT_BRANCH if current else Scope.CROSS_BRANCH
    features = app.store.list_features(scope)
    if state:
        features = [f for f in features if f.state.value == state]
    if tag:
        features = [f for f in features if tag in f.tags]

    if not features:
        console.print("[dim]No features found[/dim]")
        return

    discovery = app.store.discover()
    table = Table(title=f"Features ({len(features)})")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("State")
    table.add_column("Version", justify="right")
    table.add_column("Priority")
    table.add_column("Location")
    for feature in sorted(features, key=lambda f: f.name.lower()):
        location = discovery.location_of(feature.id)
        table.add_row(
            feature.id[:8],
            feature.name,
            _state(feature.state),
            str(feature.current_version.number),
            feature.priority or "-",
            location.describe() if location else "working tree",
        )
    console.print(table)


@main.command()
@click.argument("identifier")
@pass_app
@handle_errors
def show(app: AppContext, identifier: str):
    """Show one feature with its versions and relationships."""
    feature = app.store.find_by_name_or_id(identifier)
    console.print(f"[bold]{feature.name}[/bold] [dim]{feature.id}[/dim]")
    console.print(f"  State: {_state(feature.state)}")
    if feature.description:
        console.print(f"  {feature.description}")
    for label, value in (
        ("Tags", ", ".join(feature.tags)),
        ("Category", feature.category),
        ("Priority", feature.priority),
        ("Type", feature.type),
        ("Created", format_time(feature.created_at)),
        ("Modified", format_time(feature.modified_at)),
    ):
        if value:
            console.print(f"  {label}: {value}")

    versions = Table(title="Versions", show_edge=False)
    versions.add_column("#", justify="right")
    versions.add_column("Branch")
    versions.add_column("State")
    versions.add_column("Closed")
    for version in sorted(feature.versions, key=lambda v: v.number):
        versions.add_row(
            str(version.number),
            version.branch or "-",
            _state(version.state),
            format_time(version.closed_at) or "-",
        )
    console.print(versions)

    if feature.relationships:
        rels = Table(title="Relationships", show_edge=False)
        rels.add_column("Type")
        rels.add_column("Target")
        rels.add_column("Constraint")
        for rel in feature.relationships:
            rels.add_row(rel.type, rel.target_name or rel.target_id, str(rel.version_constraint or "-"))
        console.print(rels)

    if feature.files:
        console.print("  Files: " + ", ".join(feature.files))


@main.command()
@click.argument("source")
@click.argument("relationship_type")
@click.argument("target")
@click.option("--description", "-d", default="", help="Relationship description")
@click.option("--constraint", help="Version constraint on the target, e.g. '>=2'")
@pass_app
@handle_errors
def link(app: AppContext, source, relationship_type, target, description, constraint):
    """Create SOURCE -RELATIONSHIP_TYPE-> TARGET.

    Example:
        featgraph link "Checkout" depends-on "Payments" --constraint ">=2"
    """
    result = app.graph().link(source, target, relationship_type, description, constraint)
    for warning in result.warnings:
        console.print(f"[yellow]![/yellow] {warning}")
    console.print(
        f"[green]✓[/green] {result.source.name} --{result.relationship.type}--> {result.target.name}"
    )
    if result.inverse:
        console.print(f"  [dim]+ {result.target.name} --{result.inverse.type}--> {result.source.name}[/dim]")


@main.command()
@click.argument("source")
@click.argument("target")
@click.option("--type", "relationship_type", help="Only remove this relationship type")
@pass_app
@handle_errors
def unlink(app: AppContext, source, target, relationship_type):
    """Remove relationships from SOURCE to TARGET."""
    removed = app.graph().unlink(source, target, relationship_type)
    if not removed:
        console.print("[dim]No matching relationship[/dim]")
        return
    console.print(f"[green]✓[/green] Removed {len(removed)} relationship(s)")


def _add_branch(parent: Tree, node: TreeNode) -> None:
    for child in node.children:
        label = f"[dim]{child.relationship}[/dim] {child.feature.name} {_state(child.feature.state)}"
        if child.repeated:
            label += " [red](cycle)[/red]"
        _add_branch(parent.add(label), child)


@main.command()
@click.argument("identifier")
@click.option("--type", "relationship_type", help="Relationship type to follow")
@click.option("--depth", default=0, type=click.IntRange(min=0), help="Maximum depth (0 = unlimited)")
@pass_app
@handle_errors
def tree(app: AppContext, identifier, relationship_type, depth):
    """Show the relationship tree below a feature."""
    root = app.graph().tree(identifier, relationship_type, depth)
    view = Tree(f"[bold]{root.feature.name}[/bold] {_state(root.feature.state)}")
    _add_branch(view, root)
    console.print(view)


@main.command()
@click.argument("identifier")
@click.option("--category", "categories", multiple=True, help="Category to follow (repeatable)")
@click.option("--depth", default=0, type=click.IntRange(min=0), help="Maximum depth (0 = unlimited)")
@pass_app
@handle_errors
def impacts(app: AppContext, identifier, categories, depth):
    """List features affected by a change to IDENTIFIER."""
    impacted = app.graph().impacted(identifier, categories or None, depth)
    if not impacted:
        console.print("[dim]No impacted features[/dim]")
        return
    table = Table(title=f"Impacted features ({len(impacted)})")
    table.add_column("Depth", justify="right")
    table.add_column("Feature", style="bold")
    table.add_column("Via")
    table.add_column("Path")
    table.add_column("Warning", style="yellow")
    for item in impacted:
        table.add_row(str(item.depth), item.feature.name, item.relationship, " <- ".join(item.path), item.warning)
    console.print(table)


@main.command()
@click.option("--message", "-m", help="Commit message (default from commit_template)")
@click.option("--author", help="Override the commit author")
@click.option("--link-files", is_flag=True, help="Record changed files on the feature")
@pass_app
@handle_errors
def commit(app: AppContext, message, author, link_files):
    """Commit all changes and mark the branch's features in-progress."""
    result = app.engine().commit(message, author=author, link_files=link_files)
    if result.nothing_to_commit:
        console.print("[dim]Nothing to commit[/dim]")
        return
    names = ", ".join(f.name for f in result.features)
    console.print(f"[green]✓[/green] Committed {result.commit[:8]} on {result.branch} ({names})")


@main.command()
@click.argument("identifier", required=False)
@click.option("--squash", is_flag=True, help="Squash the feature branch into one commit")
@click.option("--keep-branch", is_flag=True, help="Do not delete the feature branch")
@click.option("--base", "base_branch", help="Merge into this branch instead of workflow.base_branch")
@click.option("--continue", "continue_", is_flag=True, help="Finish a merge after resolving conflicts")
@click.option("--abort", is_flag=True, help="Abandon a merge that stopped on conflicts")
@pass_app
@handle_errors
def merge(app: AppContext, identifier, squash, keep_branch, base_branch, continue_, abort):
    """Close features by merging their branch into the base branch."""
    if continue_ and abort:
        raise click.UsageError("--continue and --abort are mutually exclusive")
    engine = app.engine()
    if abort:
        result = engine.merge_abort()
        console.print(f"[green]✓[/green] Merge aborted, back on {result.feature_branch}")
        return
    if continue_:
        result = engine.merge_continue()
    else:
        result = engine.merge(identifier, squash=squash, keep_branch=keep_branch, base_branch=base_branch)

    if result.conflict_detected:
        console.print(f"[red]✗[/red] Merge of {result.feature_branch} stopped on conflicts:")
        for path in result.conflicts:
            console.print(f"    {path}")
        console.print("  Resolve them, 'git add' the files, then run 'featgraph merge --continue'")
        console.print("  or run 'featgraph merge --abort'")
        sys.exit(21)

    for warning in result.warnings:
        console.print(f"[yellow]![/yellow] {warning}")
    for feature in result.closed:
        console.print(f"[green]✓[/green] Closed '{feature.name}' (version {feature.current_version.number})")
    if result.merge_performed:
        console.print(f"  Merged {result.feature_branch} into {result.base_branch}")
    if result.branch_deleted:
        console.print(f"  Deleted branch {result.feature_branch}")


@main.command()
@click.argument("identifier")
@pass_app
@handle_errors
def switch(app: AppContext, identifier):
    """Check out the branch of a feature."""
    result = app.engine().switch(identifier)
    if not result.switched:
        console.print(f"[dim]Already on {result.branch or 'the current branch'}[/dim]")
        return
    console.print(f"[green]✓[/green] Switched to {result.branch}")


@main.command()
@click.argument("identifier")
@click.option("--notes", default="", help="Notes for the new version")
@pass_app
@handle_errors
def reopen(app: AppContext, identifier, notes):
    """Start a new version of a closed feature."""
    result = app.engine().reopen(identifier, notes)
    version = result.feature.current_version.number
    console.print(f"[green]✓[/green] Reopened '{result.feature.name}' as version {version}")
    if result.created_branch:
        console.print(f"  Switched to new branch [bold]{result.branch}[/bold]")


@main.command()
@pass_app
@handle_errors
def status(app: AppContext):
    """Show the current branch, its features and any pending merge."""
    report = app.engine().status()
    console.print(f"[bold]Branch:[/bold] {report.branch or '(detached)'}  [dim]{report.mode}[/dim]")
    if report.merge_state:
        state = report.merge_state
        console.print(
            f"[yellow]Merge in progress:[/yellow] {state.feature_branch} -> {state.base_branch}"
        )
        for path in state.conflict_files:
            console.print(f"    [red]conflict[/red] {path}")

    if report.features:
        table = Table(show_edge=False)
        table.add_column("Feature", style="bold")
        table.add_column("State")
        table.add_column("Version", justify="right")
        table.add_column("Branch")
        for item in report.features:
            state_label = _state(item.state)
            if item.merge_in_progress:
                state_label += " [yellow](merging)[/yellow]"
            table.add_row(
                item.feature.name,
                state_label,
                str(item.feature.current_version.number),
                item.feature.current_version.branch or "-",
            )
        console.print(table)
    else:
        console.print("[dim]No features in the working tree[/dim]")

    if report.uncommitted:
        console.print(f"[dim]{len(report.uncommitted)} uncommitted change(s)[/dim]")


@main.command()
@click.option("--fix", is_flag=True, help="Repair orphaned relationships and missing inverses")
@pass_app
@handle_errors
def validate(app: AppContext, fix: bool):
    """Check the feature graph across all branches."""
    validator = Validator(app.store)
    report = validator.validate()
    console.print(
        f"Checked {report.features_count} feature(s), {report.relationships_count} relationship(s)"
    )
    for issue in report.issues:
        colour = "red" if issue.severity is Severity.ERROR else "yellow"
        where = f" [dim]({issue.location})[/dim]" if issue.location else ""
        console.print(f"  [{colour}]{issue.code}[/{colour}] {escape(issue.message)}{where}")

    if fix and any(issue.fixable for issue in report.issues):
        result = validator.fix(report)
        console.print(f"[green]✓[/green] Fixed {len(result.fixed)} issue(s)")
        for issue, reason in result.failed:
            console.print(f"  [red]✗[/red] {issue.code} {escape(issue.message)}: {escape(reason)}")
        report = validator.validate()

    if report.is_healthy:
        console.print("[green]✓[/green] No errors")
        return
    sys.exit(1)


if __name__ == "__main__":
    main()

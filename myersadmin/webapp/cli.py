# Overview: Flask CLI commands for seeding and inspecting the admin panel slots.
#
# Commands (run with FLASK_APP=app.py):
# - python -m flask seed
#   Fill empty collections with the demo data set.
# - python -m flask users list [--role manager]
#   List principals with their role and status.
# - python -m flask slots list
#   List every slot key in the database.
# - python -m flask slots show myers-admin-users
#   Print the raw JSON snapshot stored under a key.

import json

import click
from flask import current_app
from flask.cli import with_appcontext


def _system():
    return current_app.extensions["myersadmin"]


@click.command("seed")
@with_appcontext
def seed_command():
    """Populate empty collections with demo data."""
    added = _system().seed_defaults()
    for key, count in added.items():
        status = "PASS" if count else "SKIP"
        click.echo(f"{status} {key}: {count} record(s)")


@click.group("users")
def users_group():
    """Principal inspection commands."""


@users_group.command("list")
@click.option("--role", default=None, help="Only show principals with this role")
@with_appcontext
def list_users(role):
    """List principals with their role and status."""
    for user in _system().users.all():
        if role and user["role"] != role:
            continue
        click.echo(f"{user['id']:<38} {user['email']:<32} {user['role']:<8} {user['status']}")


@click.group("slots")
def slots_group():
    """Raw slot inspection commands."""


@slots_group.command("list")
@with_appcontext
def list_slots():
    """List slot keys."""
    for key in _system().slots.keys():
        click.echo(key)


@slots_group.command("show")
@click.argument("key")
@with_appcontext
def show_slot(key):
    """Pretty-print the snapshot stored under KEY."""
    raw = _system().slots.get(key)
    if raw is None:
        raise click.ClickException(f"No slot named {key!r}")
    try:
        click.echo(json.dumps(json.loads(raw), indent=2))
    except ValueError:
        click.echo(raw)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(seed_command)
    app.cli.add_command(users_group)
    app.cli.add_command(slots_group)

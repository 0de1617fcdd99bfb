"""
Maintenance commands, meant to be run from cron:

    flask --app app sessions-cleanup --force
    flask --app app jwt-cleanup-tokens
    flask --app app auth-cleanup-login-attempts --days 30
    flask --app app auth-cleanup-password-resets
"""

import logging
import sys
from datetime import datetime, timedelta

import click
from sqlalchemy import or_

from models import db, UserSession, JWTRefreshToken, LoginAttempt, PasswordResetToken

logger = logging.getLogger(__name__)


def count_expired_sessions(now):
    return UserSession.query.filter(
        or_(UserSession.expires_at < now, UserSession.is_active.is_(False))
    ).count()


def count_inactive_sessions(cutoff):
    return UserSession.query.filter(
        UserSession.is_active.is_(True),
        UserSession.last_activity < cutoff,
    ).count()


def _print_table(rows):
    width = max(len(label) for label, _ in rows)
    click.echo(f"{'Type'.ljust(width)}  Count")
    click.echo(f"{'-' * width}  -----")
    for label, count in rows:
        click.echo(f"{label.ljust(width)}  {count}")


def register_cleanup_commands(app, service):

    @app.cli.command('sessions-cleanup')
    @click.option('--dry-run', is_flag=True, help='Show what would be cleaned without changing anything')
    @click.option('--force', is_flag=True, help='Skip the confirmation prompt')
    @click.option('--days', default=30, show_default=True, type=click.IntRange(min=1),
                  help='Days of inactivity after which an active session is closed')
    def sessions_cleanup(dry_run, force, days):
        """Clean up expired and inactive user sessions."""
        click.echo('Starting session cleanup...')

        now = datetime.utcnow()
        expired_count = count_expired_sessions(now)
        inactive_count = count_inactive_sessions(now - timedelta(days=days))
        total = expired_count + inactive_count

        if total == 0:
            click.echo('No sessions need cleanup.')
            return

        _print_table([
            ('Expired Sessions', expired_count),
            (f'Inactive Sessions (>{days} days)', inactive_count),
            ('Total', total),
        ])

        if dry_run:
            click.secho('DRY RUN: No sessions were actually cleaned.', fg='yellow')
            return

        if not force and not click.confirm('This will clean up expired sessions. Continue?'):
            click.echo('Operation cancelled.')
            return

        try:
            click.echo('Cleaning up expired sessions...')
            cleaned_expired = service.cleanup_expired_sessions()
            click.echo('Cleaning up inactive sessions...')
            cleaned_inactive = service.cleanup_inactive_sessions(days)
        except Exception as e:
            db.session.rollback()
            logger.error(f"sessions_cleanup_failed error={e}")
            click.secho(f'Session cleanup failed: {e}', fg='red', err=True)
            sys.exit(1)

        cleaned = cleaned_expired + cleaned_inactive
        click.echo('Session cleanup completed!')
        click.echo(f'Cleaned up {cleaned} sessions ({cleaned_expired} expired, {cleaned_inactive} inactive).')
        logger.info(f"sessions_cleanup_completed expired={cleaned_expired} inactive={cleaned_inactive} "
                    f"total={cleaned} cutoff_days={days}")

    @app.cli.command('jwt-cleanup-tokens')
    def jwt_cleanup_tokens():
        """Delete expired and revoked JWT refresh tokens."""
        click.echo('Starting cleanup of JWT tokens...')
        try:
            deleted = JWTRefreshToken.cleanup()
        except Exception as e:
            db.session.rollback()
            logger.error(f"jwt_cleanup_failed error={e}")
            click.secho(f'Failed to cleanup JWT tokens: {e}', fg='red', err=True)
            sys.exit(1)

        click.echo(f'Successfully deleted {deleted} expired/revoked refresh tokens.')
        click.echo('Blacklist entries expire from the cache on their own.')
        logger.info(f"jwt_cleanup_completed deleted={deleted}")

    @app.cli.command('auth-cleanup-login-attempts')
    @click.option('--days', default=30, show_default=True, type=click.IntRange(min=1),
                  help='Keep login attempts from the last N days')
    def auth_cleanup_login_attempts(days):
        """Delete old login attempt records."""
        click.echo(f'Cleaning up login attempts older than {days} days...')
        try:
            deleted = LoginAttempt.cleanup(days)
        except Exception as e:
            db.session.rollback()
            logger.error(f"login_attempts_cleanup_failed error={e}")
            click.secho(f'Failed to cleanup login attempts: {e}', fg='red', err=True)
            sys.exit(1)

        click.echo(f'Deleted {deleted} login attempt records.')
        logger.info(f"login_attempts_cleanup_completed deleted={deleted} days={days}")

    @app.cli.command('auth-cleanup-password-resets')
    def auth_cleanup_password_resets():
        """Delete expired or used password reset tokens older than 24 hours."""
        click.echo('Cleaning up password reset tokens...')
        try:
            deleted = PasswordResetToken.cleanup()
        except Exception as e:
            db.session.rollback()
            logger.error(f"password_resets_cleanup_failed error={e}")
            click.secho(f'Failed to cleanup password reset tokens: {e}', fg='red', err=True)
            sys.exit(1)

        click.echo(f'Deleted {deleted} password reset tokens.')
        logger.info(f"password_resets_cleanup_completed deleted={deleted}")

    return sessions_cleanup, jwt_cleanup_tokens, auth_cleanup_login_attempts, auth_cleanup_password_resets

"""create user and game_session tables

Revision ID: 5c2a9d41e7b0
Revises:
Create Date: 2026-10-19 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c2a9d41e7b0'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'user',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('password_hash', sa.String(length=256), nullable=False),
        sa.Column('games_played', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('games_won', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('best_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cards_guessed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('fastest_guess_ms', sa.Integer(), nullable=True),
    )
    op.create_index('ix_user_username', 'user', ['username'], unique=True)

    op.create_table(
        'game_session',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('lobby_code', sa.String(length=8), nullable=False),
        sa.Column('mode', sa.String(length=64), nullable=True),
        sa.Column('score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cards_guessed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('fastest_guess_ms', sa.Integer(), nullable=True),
        sa.Column('rounds_json', sa.Text(), nullable=True),
        sa.Column('sets_json', sa.Text(), nullable=True),
        sa.Column('rarities_json', sa.Text(), nullable=True),
        sa.Column('played_at', sa.Float(), nullable=False),
    )
    op.create_index('ix_game_session_user_id', 'game_session', ['user_id'])
    op.create_index('ix_game_session_mode', 'game_session', ['mode'])


def downgrade():
    op.drop_index('ix_game_session_mode', table_name='game_session')
    op.drop_index('ix_game_session_user_id', table_name='game_session')
    op.drop_table('game_session')
    op.drop_index('ix_user_username', table_name='user')
    op.drop_table('user')

"""Official game mode presets."""

from .errors import InvalidRequest
from .lobby import GameConfig

OFFICIAL_MODES = {
    'classic': {
        'name': 'The Classic',
        'description': 'The original challenge. 151 cards, Secret Rares only.',
        'config': GameConfig(round_count=10, set_filter=frozenset({'sv03.5'}), rare_only=True, mode='classic'),
    },
    'pioneers': {
        'name': 'The Pioneers',
        'description': 'Back to the roots. Base Set, Rares only.',
        'config': GameConfig(round_count=10, set_filter=frozenset({'base1'}),
                             rarity_filter=frozenset({'Rare'}), mode='pioneers'),
    },
}


def get_mode(key: str) -> dict:
    mode = OFFICIAL_MODES.get((key or '').lower())
    if mode is None:
        raise InvalidRequest(f'Unknown game mode: {key}')
    return mode


def list_modes():
    return [
        {'key': key, 'name': m['name'], 'description': m['description'], 'config': m['config'].to_dict()}
        for key, m in OFFICIAL_MODES.items()
    ]

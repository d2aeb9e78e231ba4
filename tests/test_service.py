import threading

import pytest

from cardguess.services.games.errors import NoCardsAvailable, NotFound
from cardguess.services.games.lobby import FINISHED, PLAYING, TIMEOUT_GUESS, WAITING, GameConfig
from cardguess.services.games.scheduler import DEADLINE, REVEAL
from cardguess.services.games.registry import LobbyRegistry
from cardguess.services.games.service import GameService, lobby_room
from conftest import DEFAULT_CARDS, Engine, RecordingBroadcaster, ScriptedPool, make_card


def two_player_game(engine, rounds=3):
    lobby = engine.service.create_lobby('host', 'Host', GameConfig(round_count=rounds))
    engine.service.join_lobby(lobby.id, 'guest-b', 'Bob')
    engine.service.start_game(lobby.id, 'host')
    return lobby


def test_create_fetches_cards_before_lobby_is_visible(engine):
    lobby = engine.service.create_lobby('host', 'Host', GameConfig(round_count=3))
    assert [c.id for c in lobby.cards] == ['c1', 'c2', 'c3']
    assert engine.registry.get(lobby.id.lower()) is lobby
    assert engine.service.get_lobby_status(lobby.id)['status'] == WAITING


def test_unknown_lobby_is_not_found(engine):
    with pytest.raises(NotFound):
        engine.service.get_lobby_status('ZZZZ')


def test_join_broadcasts_player_update(engine):
    lobby = engine.service.create_lobby('host', 'Host', GameConfig(round_count=1))
    engine.service.join_lobby(lobby.id, 'guest-b', 'Bob')
    engine.service.join_lobby(lobby.id, 'guest-b', 'Bob')
    updates = engine.broadcaster.events('playerUpdate')
    assert updates[-1]['count'] == 2
    assert list(lobby.players) == ['host', 'guest-b']


def test_start_arms_deadline_and_reveal(engine):
    lobby = two_player_game(engine)
    started = engine.broadcaster.events('gameStarted')
    assert started[0]['round'] == 1
    assert started[0]['totalRounds'] == 3
    assert started[0]['revealPayload'] == 'reveals/c1.png'
    assert len(started[0]['playerStatuses']) == 2
    assert engine.scheduler.active(lobby.id, DEADLINE).round_number == 1
    assert engine.scheduler.active(lobby.id, REVEAL).round_number == 1


def test_all_finished_advances_exactly_once(engine):
    lobby = two_player_game(engine)
    first_deadline = engine.scheduler.active(lobby.id, DEADLINE)
    engine.clock.advance(1000)
    result = engine.service.make_guess(lobby.id, 'host', 'Pikachu')
    assert result['correct'] and not result['roundFinished']
    assert result['name'] == 'Pikachu'
    engine.clock.advance(1000)
    result = engine.service.give_up(lobby.id, 'guest-b')
    assert result['roundFinished']
    assert lobby.current_round == 2
    assert first_deadline.cancelled
    assert engine.scheduler.active(lobby.id, DEADLINE).round_number == 2
    assert [p['reason'] for p in engine.broadcaster.events('roundFinished')] == ['normal']
    assert engine.broadcaster.events('nextRound')[0]['round'] == 2


def test_failed_guess_does_not_leak_answer(engine):
    lobby = two_player_game(engine)
    result = engine.service.make_guess(lobby.id, 'host', 'Dracaufeu')
    assert result['correct'] is False
    assert 'name' not in result and 'fullImageRef' not in result
    assert lobby.current_round == 1


def test_deadline_forces_advance_for_missing_players(engine):
    lobby = two_player_game(engine)
    engine.clock.advance(2000)
    engine.service.make_guess(lobby.id, 'host', 'pikachu')
    engine.clock.advance(28000)

    assert engine.scheduler.active(lobby.id, DEADLINE).fire() is True

    outcomes = {o.player_id: o for o in lobby.history[1]}
    assert outcomes['host'].points == 28000
    assert outcomes['guest-b'].correct is False
    assert outcomes['guest-b'].elapsed_ms == 30000
    assert outcomes['guest-b'].points == 0
    assert outcomes['guest-b'].guess == TIMEOUT_GUESS
    assert lobby.current_round == 2
    finished = engine.broadcaster.events('roundFinished')
    assert [f['reason'] for f in finished] == ['timeout']
    assert finished[0]['result']['playerStatuses']
    assert engine.broadcaster.events('nextRound')[0]['playerStatuses']


def test_stale_deadline_after_all_finished_changes_nothing(engine):
    lobby = two_player_game(engine)
    stale = engine.scheduler.active(lobby.id, DEADLINE)
    engine.service.give_up(lobby.id, 'host')
    engine.service.give_up(lobby.id, 'guest-b')
    before = (lobby.current_round, dict(lobby.scores), {r: list(o) for r, o in lobby.history.items()})
    events_before = len(engine.broadcaster.room_events)

    assert stale.fire() is False
    assert engine.service.on_deadline(lobby.id, 1) is False

    after = (lobby.current_round, dict(lobby.scores), {r: list(o) for r, o in lobby.history.items()})
    assert after == before
    assert len(engine.broadcaster.room_events) == events_before


def test_deadline_for_missing_lobby_is_ignored(engine):
    assert engine.service.on_deadline('NOPE', 1) is False
    assert engine.service.on_reveal_tick('NOPE', 1) is False


def test_reveal_tick_is_read_only(engine):
    lobby = two_player_game(engine)
    engine.clock.advance(15000)
    before = (lobby.current_round, dict(lobby.scores), set(lobby.finished_this_round))
    assert engine.scheduler.active(lobby.id, REVEAL).fire() is True
    reveal = engine.broadcaster.events('progressiveReveal')[-1]['revealPayload']
    assert reveal['round'] == 1
    assert reveal['revealFraction'] == 0.65
    assert (lobby.current_round, dict(lobby.scores), set(lobby.finished_this_round)) == before


def test_reveal_tick_stops_after_round_moves_on(engine):
    lobby = two_player_game(engine)
    engine.service.give_up(lobby.id, 'host')
    engine.service.give_up(lobby.id, 'guest-b')
    assert engine.service.on_reveal_tick(lobby.id, 1) is False
    assert engine.service.on_reveal_tick(lobby.id, 2) is True


def test_short_card_pool_finishes_after_available_cards():
    c1, c2 = make_card('c1', 'Pikachu'), make_card('c2', 'Mewtwo')
    engine = Engine(pool=ScriptedPool([c1, c1], [c2], [], [c1], []), attempts=5)
    lobby = engine.service.create_lobby('host', 'Host', GameConfig(round_count=3))
    assert [c.id for c in lobby.cards] == ['c1', 'c2']
    assert len(engine.pool.calls) == 5
    assert engine.sleeps == [0.2, 0.4, 0.6, 0.8]

    engine.service.start_game(lobby.id, 'host')
    engine.service.give_up(lobby.id, 'host')
    assert lobby.current_round == 2
    engine.service.give_up(lobby.id, 'host')
    assert lobby.status == FINISHED
    assert lobby.current_round == 2
    assert engine.scheduler.active(lobby.id, DEADLINE) is None
    assert engine.scheduler.active(lobby.id, REVEAL) is None
    final = engine.broadcaster.events('nextRound')[-1]
    assert final['status'] == FINISHED
    assert set(final['history']) == {'1', '2'}


def test_start_refetches_once_then_fails():
    engine = Engine(pool=ScriptedPool(), attempts=1)
    lobby = engine.service.create_lobby('host', 'Host', GameConfig(round_count=2))
    assert lobby.cards == ()
    with pytest.raises(NoCardsAvailable):
        engine.service.start_game(lobby.id, 'host')
    assert len(engine.pool.calls) == 2
    assert lobby.status == WAITING


def test_start_refetch_can_recover():
    engine = Engine(pool=ScriptedPool([], [make_card('c9', 'Mew')]), attempts=1)
    lobby = engine.service.create_lobby('host', 'Host', GameConfig(round_count=1))
    engine.service.start_game(lobby.id, 'host')
    assert lobby.status == PLAYING
    assert lobby.current_card.id == 'c9'


def test_finished_game_hands_records_to_recorder():
    engine = Engine()
    lobby = engine.service.create_lobby('7', 'Registered', GameConfig(round_count=1))
    engine.service.join_lobby(lobby.id, 'guest-b', 'Bob')
    engine.service.start_game(lobby.id, '7')
    engine.clock.advance(1000)
    engine.service.make_guess(lobby.id, '7', 'pikachu')
    engine.service.give_up(lobby.id, 'guest-b')
    assert lobby.status == FINISHED
    records = engine.recorder.recorded
    assert [r.player_id for r in records] == ['7']
    assert records[0].final_score == 29000
    assert records[0].max_score == 30000


def test_finished_lobbies_are_evicted_after_retention(engine):
    lobby = engine.service.create_lobby('host', 'Host', GameConfig(round_count=1))
    engine.service.start_game(lobby.id, 'host')
    engine.service.give_up(lobby.id, 'host')
    assert lobby.status == FINISHED
    engine.clock.advance(59999)
    assert engine.service.evict_expired() == []
    engine.clock.advance(1)
    assert engine.service.evict_expired() == [lobby.id]
    assert lobby.id not in engine.registry


def test_abandoned_waiting_lobby_is_evicted_but_running_game_is_kept(engine):
    idle = engine.service.create_lobby('host', 'Host', GameConfig(round_count=1))
    engine.pool.batches.append(DEFAULT_CARDS)
    running = engine.service.create_lobby('other', 'Other', GameConfig(round_count=3))
    engine.service.start_game(running.id, 'other')
    engine.clock.advance(60000)

    assert engine.service.evict_expired() == [idle.id]
    assert idle.id not in engine.registry
    assert running.id in engine.registry
    assert engine.scheduler.active(running.id, DEADLINE) is not None


def test_broadcasts_target_the_lobby_room(engine):
    lobby = two_player_game(engine)
    rooms = {room for room, _, _ in engine.broadcaster.room_events}
    assert rooms == {lobby_room(lobby.id)}


def test_scheduler_and_registry_must_agree_on_duration():
    engine = Engine()
    with pytest.raises(ValueError):
        GameService(LobbyRegistry(round_duration_ms=1000), engine.scheduler, engine.pool, engine.broadcaster)


class FailingBroadcaster(RecordingBroadcaster):
    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on

    def to_room(self, room, event, payload):
        if event == self.fail_on:
            raise RuntimeError('emit failed')
        super().to_room(room, event, payload)


def test_broadcast_failure_does_not_block_finish_or_recording():
    engine = Engine()
    engine.service.broadcaster = FailingBroadcaster('roundFinished')
    lobby = engine.service.create_lobby('7', 'Registered', GameConfig(round_count=1))
    engine.service.start_game(lobby.id, '7')

    result = engine.service.give_up(lobby.id, '7')

    assert result['roundFinished'] is True
    assert lobby.status == FINISHED
    assert [r.player_id for r in engine.recorder.recorded] == ['7']
    assert engine.service.broadcaster.events('nextRound')[-1]['status'] == FINISHED
    assert engine.scheduler.active(lobby.id, DEADLINE) is None


def test_broadcast_failure_on_deadline_still_advances():
    engine = Engine()
    engine.service.broadcaster = FailingBroadcaster('nextRound')
    lobby = two_player_game(engine)
    engine.clock.advance(30000)

    assert engine.service.on_deadline(lobby.id, 1) is True
    assert lobby.current_round == 2
    assert engine.scheduler.active(lobby.id, DEADLINE).round_number == 2


def run_together(*actions):
    """Release every action at once on its own thread; return raised errors."""
    barrier = threading.Barrier(len(actions))
    errors = []

    def worker(action):
        barrier.wait()
        try:
            action()
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(action,)) for action in actions]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    assert not any(thread.is_alive() for thread in threads)
    return errors


@pytest.mark.parametrize('trial', range(20))
def test_concurrent_guesses_and_deadline_advance_once(trial):
    engine = Engine()
    lobby = engine.service.create_lobby('host', 'Host', GameConfig(round_count=3))
    guests = [f'guest-{n}' for n in range(6)]
    for guest in guests:
        engine.service.join_lobby(lobby.id, guest, guest)
    engine.service.start_game(lobby.id, 'host')
    engine.clock.advance(5000)

    actions = [lambda g=guest: engine.service.make_guess(lobby.id, g, 'Pikachu') for guest in guests]
    actions.append(lambda: engine.service.give_up(lobby.id, 'host'))
    actions.append(lambda: engine.service.on_deadline(lobby.id, 1))
    assert run_together(*actions) == []

    assert lobby.current_round == 2
    players = [o.player_id for o in lobby.history[1]]
    assert sorted(players) == sorted(['host'] + guests)
    finished = engine.broadcaster.events('roundFinished')
    assert [f['result']['round'] for f in finished] == [1]
    assert [p['round'] for p in engine.broadcaster.events('nextRound')] == [2]
    assert engine.scheduler.active(lobby.id, DEADLINE).round_number == 2


def test_lobbies_progress_independently():
    engine = Engine(pool=ScriptedPool(DEFAULT_CARDS, DEFAULT_CARDS))
    busy = engine.service.create_lobby('host-a', 'A', GameConfig(round_count=2))
    free = engine.service.create_lobby('host-b', 'B', GameConfig(round_count=2))
    engine.service.start_game(busy.id, 'host-a')
    engine.service.start_game(free.id, 'host-b')

    done = threading.Event()

    def play_free_lobby():
        engine.service.give_up(free.id, 'host-b')
        done.set()

    with busy.lock:
        worker = threading.Thread(target=play_free_lobby)
        worker.start()
        assert done.wait(timeout=5)
        assert busy.current_round == 1
    worker.join(timeout=5)
    assert free.current_round == 2

from cardguess import db, bcrypt
from flask_login import UserMixin


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    # Lifetime aggregates folded in by the session recorder
    games_played = db.Column(db.Integer, default=0, nullable=False)
    games_won = db.Column(db.Integer, default=0, nullable=False)
    total_score = db.Column(db.Integer, default=0, nullable=False)
    best_score = db.Column(db.Integer, default=0, nullable=False)
    cards_guessed = db.Column(db.Integer, default=0, nullable=False)
    fastest_guess_ms = db.Column(db.Integer, nullable=True)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    @property
    def player_id(self) -> str:
        return str(self.id)

    def apply_session(self, record) -> None:
        self.games_played = (self.games_played or 0) + 1
        self.games_won = (self.games_won or 0) + (1 if record.won else 0)
        self.total_score = (self.total_score or 0) + record.final_score
        self.best_score = max(self.best_score or 0, record.final_score)
        self.cards_guessed = (self.cards_guessed or 0) + record.cards_guessed
        if record.fastest_correct_ms is not None:
            if self.fastest_guess_ms is None or record.fastest_correct_ms < self.fastest_guess_ms:
                self.fastest_guess_ms = record.fastest_correct_ms

    def to_dict(self):
        return {
            'id': self.id,
            'playerId': self.player_id,
            'username': self.username,
            'gamesPlayed': self.games_played or 0,
            'gamesWon': self.games_won or 0,
            'totalScore': self.total_score or 0,
            'bestScore': self.best_score or 0,
            'cardsGuessed': self.cards_guessed or 0,
            'fastestGuessMs': self.fastest_guess_ms,
        }


class GameSession(db.Model):
    __tablename__ = 'game_session'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    lobby_code = db.Column(db.String(8), nullable=False)
    mode = db.Column(db.String(64), nullable=True, index=True)
    score = db.Column(db.Integer, default=0, nullable=False)
    max_score = db.Column(db.Integer, default=0, nullable=False)
    cards_guessed = db.Column(db.Integer, default=0, nullable=False)
    fastest_guess_ms = db.Column(db.Integer, nullable=True)
    rounds_json = db.Column(db.Text, nullable=True)  # JSON-encoded per-round outcomes
    sets_json = db.Column(db.Text, nullable=True)  # JSON-encoded list of set names
    rarities_json = db.Column(db.Text, nullable=True)  # JSON-encoded rarity -> correct guesses
    played_at = db.Column(db.Float, nullable=False)

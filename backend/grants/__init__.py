from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import json
import click
from config import Config

db = SQLAlchemy()
migrate = Migrate()
allowed_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    flask_app.logger.setLevel(flask_app.config.get('LOG_LEVEL', 'INFO'))

    db.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # Import and register blueprints here
    from grants.main import main
    flask_app.register_blueprint(main)

    from grants.api.distribution import distribution
    flask_app.register_blueprint(distribution, url_prefix='/api')

    from grants.api.leaderboard import leaderboard
    flask_app.register_blueprint(leaderboard, url_prefix='/api/leaderboard')

    from grants.errors import DistributionError

    @flask_app.errorhandler(DistributionError)
    def handle_distribution_error(exc):
        flask_app.logger.warning(f"[error] {exc.error}: {exc.message}")
        return jsonify(exc.to_dict()), exc.status_code

    from grants.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        from grants.models import ScoreEntry
        from grants.services.distribution.periods import previous_period_key
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            # Seed last week's leaderboard
            season = previous_period_key()
            seed = [('0x' + '1' * 40, 'alice', 60, 300), ('0x' + '2' * 40, 'bob', 40, 150), ('0x' + '3' * 40, 'cara', 10, 50)]
            for address, alias, wins, points in seed:
                db.session.add(ScoreEntry(period_key=season, address=address, alias=alias, wins=wins, draws=0, losses=0, points=points))

            db.session.commit()
            print(f'Database has been reset and seeded for period {season}!')

    @click.command('distribute')
    @click.option('--period', 'period_key', default=None, help='Period key (Monday, YYYY-MM-DD); defaults to last week.')
    @click.option('--dry-run', is_flag=True, help='Compute without writing or sending.')
    def distribute_command(period_key, dry_run):
        """Runs the weekly distribution for one period."""
        from grants.errors import DistributionError
        from grants.services.distribution import build_orchestrator
        from grants.services.distribution.periods import previous_period_key
        with flask_app.app_context():
            period_key = period_key or previous_period_key()
            orchestrator = build_orchestrator(flask_app)
            if orchestrator.settings.paused and not dry_run:
                raise click.ClickException('Distributions are currently paused')
            try:
                report = orchestrator.run(period_key, dry_run=dry_run)
            except DistributionError as exc:
                raise click.ClickException(json.dumps(exc.to_dict()))
            click.echo(json.dumps(report.to_dict(), indent=2))

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(distribute_command)

    return flask_app

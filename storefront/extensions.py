from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event

db = SQLAlchemy()


def enable_sqlite_savepoints(app):
    # pysqlite defers BEGIN and breaks SAVEPOINT semantics; take over
    # transaction control so begin_nested() and rollback() behave.
    with app.app_context():
        engine = db.engine
        if engine.dialect.name != 'sqlite':
            return

        @event.listens_for(engine, 'connect')
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, 'begin')
        def _emit_begin(conn):
            conn.exec_driver_sql('BEGIN')

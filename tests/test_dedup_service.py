from unittest.mock import Mock
from uuid import uuid4

from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from wabot.services.dedup_service import claim_message


class TestClaimMessage:
    def test_new_message_is_claimed(self, db_session):
        db_session.execute.return_value.rowcount = 1
        assert claim_message(db_session, uuid4(), "wamid.1") is True
        db_session.commit.assert_called_once()

    def test_conflict_means_duplicate(self, db_session):
        db_session.execute.return_value.rowcount = 0
        assert claim_message(db_session, uuid4(), "wamid.1") is False

    def test_insert_uses_on_conflict_do_nothing(self, db_session):
        db_session.execute.return_value.rowcount = 1
        claim_message(db_session, uuid4(), "wamid.1")
        statement = db_session.execute.call_args.args[0]
        sql = str(statement.compile(dialect=postgresql.dialect()))
        assert "INSERT INTO message_dedup" in sql
        assert "ON CONFLICT (business_id, message_id) DO NOTHING" in sql

    def test_database_error_processes_anyway(self):
        db = Mock()
        db.execute.side_effect = OperationalError("INSERT", {}, Exception("connection lost"))
        assert claim_message(db, uuid4(), "wamid.1") is True
        db.rollback.assert_called_once()

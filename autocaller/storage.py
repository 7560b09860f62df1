"""
ストレージモジュール (Storage Module)

通話レコードと保留中の質問の永続化を抽象化するストレージレイヤーを提供します。
"""

import json
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Generator, Iterable, List, Optional

from .models import CallRecord, CallResult, PendingQuestion


class StorageError(Exception):
    """
    ストレージエラー

    データベース操作中に発生したエラーを表す例外クラスです。
    """
    pass


# update_call で更新可能なカラム
UPDATABLE_CALL_FIELDS = frozenset({
    "status",
    "result",
    "completed_at",
    "duration",
    "transcript",
    "provider_call_id",
    "answered_at",
})


class Storage(ABC):
    """
    ストレージの抽象基底クラス

    通話レコードと保留中の質問の永続化を担当する抽象インターフェースを定義します。
    通話レコードの更新はリビジョン番号による compare-and-swap で行います。
    """

    @abstractmethod
    def insert_call(self, record: CallRecord) -> None:
        """
        通話レコードを新規作成

        Args:
            record: 保存する通話レコード

        Raises:
            StorageError: 保存に失敗した場合
        """
        pass

    @abstractmethod
    def get_call(self, call_id: str) -> Optional[CallRecord]:
        """
        IDで通話レコードを取得

        Args:
            call_id: 通話レコードID

        Returns:
            通話レコード、見つからない場合はNone
        """
        pass

    @abstractmethod
    def get_call_by_provider_id(self, provider_call_id: str) -> Optional[CallRecord]:
        """Vonage通話UUIDで通話レコードを取得"""
        pass

    @abstractmethod
    def update_call(
        self,
        call_id: str,
        fields: Dict[str, Any],
        expected_revision: int
    ) -> bool:
        """
        通話レコードの一部フィールドを更新

        保存されているリビジョンが expected_revision と一致する場合のみ更新し、
        リビジョンを1増やします。

        Args:
            call_id: 通話レコードID
            fields: 更新するフィールド
            expected_revision: 読み取り時のリビジョン

        Returns:
            更新した場合はTrue、リビジョン不一致またはレコードが無い場合はFalse

        Raises:
            StorageError: 更新に失敗した場合
        """
        pass

    @abstractmethod
    def list_calls(
        self,
        statuses: Optional[Iterable[str]] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[CallRecord]:
        """
        通話レコード一覧を取得

        Args:
            statuses: ステータスで絞り込む場合に指定
            since: この日時以降に作成されたレコードに絞り込む
            limit: 最大件数

        Returns:
            作成日時の新しい順の通話レコードのリスト
        """
        pass

    @abstractmethod
    def save_question(self, question: PendingQuestion) -> None:
        pass

    @abstractmethod
    def get_question(self, question_id: str) -> Optional[PendingQuestion]:
        pass

    @abstractmethod
    def list_questions(
        self,
        call_id: str,
        answered: Optional[bool] = None,
        delivered: Optional[bool] = None
    ) -> List[PendingQuestion]:
        pass

    @abstractmethod
    def answer_question(self, question_id: str, answer: str) -> Optional[PendingQuestion]:
        """
        質問に回答を設定

        注入済みの質問は更新しません。

        Returns:
            更新後の質問、見つからない・注入済みの場合はNone
        """
        pass

    @abstractmethod
    def mark_questions_delivered(self, question_ids: Iterable[str]) -> None:
        pass


class SQLiteStorage(Storage):
    """
    SQLite実装

    SQLiteデータベースを使用したストレージ実装です。
    操作ごとに接続を開閉します。
    """

    def __init__(self, db_path: str = "calls.db"):
        """
        SQLiteStorageを初期化

        Args:
            db_path: SQLiteデータベースファイルのパス
        """
        self.db_path = db_path
        self._create_tables()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        データベース接続のコンテキストマネージャー

        Yields:
            SQLite接続オブジェクト

        Raises:
            StorageError: 接続に失敗した場合
        """
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=10)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Database connection error: {e}") from e
        finally:
            if conn:
                conn.close()

    def _create_tables(self) -> None:
        """
        データベーステーブルを作成

        calls と pending_questions テーブルが存在しない場合に作成します。

        Raises:
            StorageError: テーブル作成に失敗した場合
        """
        create_calls_table = """
        CREATE TABLE IF NOT EXISTS calls (
            id VARCHAR(36) PRIMARY KEY,
            recipient_name TEXT NOT NULL,
            phone_number VARCHAR(20) NOT NULL,
            call_goal TEXT NOT NULL,
            additional_context TEXT NOT NULL,
            status VARCHAR(20) NOT NULL,
            result TEXT,
            created_at TIMESTAMP NOT NULL,
            completed_at TIMESTAMP,
            duration REAL,
            transcript TEXT NOT NULL DEFAULT '',
            provider_call_id VARCHAR(64),
            answered_at TIMESTAMP,
            revision INTEGER NOT NULL DEFAULT 0
        )
        """

        create_questions_table = """
        CREATE TABLE IF NOT EXISTS pending_questions (
            id VARCHAR(36) PRIMARY KEY,
            call_id VARCHAR(36) NOT NULL,
            question TEXT NOT NULL,
            context TEXT NOT NULL,
            timestamp TIMESTAMP NOT NULL,
            answered INTEGER NOT NULL DEFAULT 0,
            answer TEXT,
            delivered INTEGER NOT NULL DEFAULT 0
        )
        """

        # Create indexes for common queries
        create_provider_id_index = """
        CREATE INDEX IF NOT EXISTS idx_calls_provider_call_id ON calls(provider_call_id)
        """

        create_status_index = """
        CREATE INDEX IF NOT EXISTS idx_calls_status ON calls(status)
        """

        create_question_call_id_index = """
        CREATE INDEX IF NOT EXISTS idx_pending_questions_call_id ON pending_questions(call_id)
        """

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(create_calls_table)
                cursor.execute(create_questions_table)
                cursor.execute(create_provider_id_index)
                cursor.execute(create_status_index)
                cursor.execute(create_question_call_id_index)
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to create tables: {e}") from e

    def insert_call(self, record: CallRecord) -> None:
        sql = """
        INSERT INTO calls (
            id, recipient_name, phone_number, call_goal, additional_context,
            status, result, created_at, completed_at, duration, transcript,
            provider_call_id, answered_at, revision
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (
                    record.id,
                    record.recipient_name,
                    record.phone_number,
                    record.call_goal,
                    record.additional_context,
                    record.status,
                    self._encode_value("result", record.result),
                    record.created_at.isoformat(),
                    self._encode_value("completed_at", record.completed_at),
                    record.duration,
                    record.transcript or "",
                    record.provider_call_id,
                    self._encode_value("answered_at", record.answered_at),
                    record.revision
                ))
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to insert call: {e}") from e

    def get_call(self, call_id: str) -> Optional[CallRecord]:
        return self._fetch_one_call("SELECT * FROM calls WHERE id = ?", (call_id,))

    def get_call_by_provider_id(self, provider_call_id: str) -> Optional[CallRecord]:
        return self._fetch_one_call(
            "SELECT * FROM calls WHERE provider_call_id = ?", (provider_call_id,)
        )

    def _fetch_one_call(self, sql: str, params: tuple) -> Optional[CallRecord]:
        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, params)
                row = cursor.fetchone()

                if row is None:
                    return None

                return self._row_to_call(row)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to get call: {e}") from e

    def update_call(
        self,
        call_id: str,
        fields: Dict[str, Any],
        expected_revision: int
    ) -> bool:
        """
        通話レコードの一部フィールドを compare-and-swap で更新

        Args:
            call_id: 通話レコードID
            fields: 更新するフィールド (UPDATABLE_CALL_FIELDS のみ)
            expected_revision: 読み取り時のリビジョン

        Returns:
            更新した場合はTrue

        Raises:
            ValueError: 更新できないフィールドが含まれる場合
            StorageError: 更新に失敗した場合
        """
        unknown = set(fields) - UPDATABLE_CALL_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
        if not fields:
            return True

        assignments = [f"{name} = ?" for name in fields]
        params: List[Any] = [self._encode_value(name, value) for name, value in fields.items()]
        sql = (
            f"UPDATE calls SET {', '.join(assignments)}, revision = revision + 1 "
            f"WHERE id = ? AND revision = ?"
        )
        params.extend([call_id, expected_revision])

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, params)
                conn.commit()
                return cursor.rowcount == 1
        except sqlite3.Error as e:
            raise StorageError(f"Failed to update call: {e}") from e

    def list_calls(
        self,
        statuses: Optional[Iterable[str]] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[CallRecord]:
        sql = "SELECT * FROM calls"

        conditions = []
        params: List[Any] = []

        if statuses is not None:
            status_list = list(statuses)
            if not status_list:
                return []
            conditions.append(f"status IN ({', '.join('?' for _ in status_list)})")
            params.extend(status_list)

        if since is not None:
            conditions.append("created_at >= ?")
            params.append(since.isoformat())

        if conditions:
            sql += " WHERE " + " AND ".join(conditions)

        sql += " ORDER BY created_at DESC"

        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, params)
                rows = cursor.fetchall()

                return [self._row_to_call(row) for row in rows]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list calls: {e}") from e

    def save_question(self, question: PendingQuestion) -> None:
        sql = """
        INSERT OR REPLACE INTO pending_questions (
            id, call_id, question, context, timestamp, answered, answer, delivered
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (
                    question.id,
                    question.call_id,
                    question.question,
                    question.context,
                    question.timestamp.isoformat(),
                    int(question.answered),
                    question.answer,
                    int(question.delivered)
                ))
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save question: {e}") from e

    def get_question(self, question_id: str) -> Optional[PendingQuestion]:
        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT * FROM pending_questions WHERE id = ?", (question_id,))
                row = cursor.fetchone()

                if row is None:
                    return None

                return self._row_to_question(row)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to get question: {e}") from e

    def list_questions(
        self,
        call_id: str,
        answered: Optional[bool] = None,
        delivered: Optional[bool] = None
    ) -> List[PendingQuestion]:
        sql = "SELECT * FROM pending_questions WHERE call_id = ?"
        params: List[Any] = [call_id]

        if answered is not None:
            sql += " AND answered = ?"
            params.append(int(answered))

        if delivered is not None:
            sql += " AND delivered = ?"
            params.append(int(delivered))

        sql += " ORDER BY timestamp ASC"

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, params)
                return [self._row_to_question(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list questions: {e}") from e

    def answer_question(self, question_id: str, answer: str) -> Optional[PendingQuestion]:
        sql = """
        UPDATE pending_questions SET answered = 1, answer = ?
        WHERE id = ? AND delivered = 0
        """

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (answer, question_id))
                conn.commit()
                if cursor.rowcount != 1:
                    return None
        except sqlite3.Error as e:
            raise StorageError(f"Failed to answer question: {e}") from e

        return self.get_question(question_id)

    def mark_questions_delivered(self, question_ids: Iterable[str]) -> None:
        ids = list(question_ids)
        if not ids:
            return

        sql = (
            f"UPDATE pending_questions SET delivered = 1 "
            f"WHERE id IN ({', '.join('?' for _ in ids)})"
        )

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, ids)
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to mark questions delivered: {e}") from e

    @staticmethod
    def _encode_value(name: str, value: Any) -> Any:
        """フィールド値を SQLite に保存する形式に変換"""
        if value is None:
            return None
        if name == "result":
            result = value.to_dict() if isinstance(value, CallResult) else value
            return json.dumps(result, ensure_ascii=False)
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    def _row_to_call(self, row: sqlite3.Row) -> CallRecord:
        """
        SQLite行をCallRecordオブジェクトに変換

        Args:
            row: SQLite行オブジェクト

        Returns:
            CallRecord データモデル
        """
        result = CallResult.from_dict(json.loads(row["result"])) if row["result"] else None
        return CallRecord(
            id=row["id"],
            recipient_name=row["recipient_name"],
            phone_number=row["phone_number"],
            call_goal=row["call_goal"],
            additional_context=row["additional_context"],
            status=row["status"],
            created_at=datetime.fromisoformat(row["created_at"]),
            result=result,
            completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
            duration=row["duration"],
            transcript=row["transcript"] or "",
            provider_call_id=row["provider_call_id"],
            answered_at=datetime.fromisoformat(row["answered_at"]) if row["answered_at"] else None,
            revision=row["revision"]
        )

    def _row_to_question(self, row: sqlite3.Row) -> PendingQuestion:
        return PendingQuestion(
            id=row["id"],
            call_id=row["call_id"],
            question=row["question"],
            context=row["context"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            answered=bool(row["answered"]),
            answer=row["answer"],
            delivered=bool(row["delivered"])
        )

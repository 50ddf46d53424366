"""bpmn_collab の例外型定義"""

from __future__ import annotations


class CollabError(Exception):
    """bpmn_collab のエラー基底クラス。"""

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class CollabErrorCodes:
    """CollabError のエラーコード定数。"""

    TRANSLATION_FAILED: str = "TRANSLATION_FAILED"
    REFERENCE_NOT_FOUND: str = "REFERENCE_NOT_FOUND"
    INCOMPATIBLE_CONNECTION: str = "INCOMPATIBLE_CONNECTION"
    DUPLICATE_ELEMENT: str = "DUPLICATE_ELEMENT"
    CONCURRENCY_CONFLICT: str = "CONCURRENCY_CONFLICT"
    DELIVERY_FAILED: str = "DELIVERY_FAILED"
    EVENT_STORE_ERROR: str = "EVENT_STORE_ERROR"
    PAYLOAD_TOO_LARGE: str = "PAYLOAD_TOO_LARGE"
    TOO_MANY_ELEMENTS: str = "TOO_MANY_ELEMENTS"
    INVALID_DOCUMENT: str = "INVALID_DOCUMENT"
    SNAPSHOT_NOT_FOUND: str = "SNAPSHOT_NOT_FOUND"
    DUPLICATE_SNAPSHOT: str = "DUPLICATE_SNAPSHOT"
    AGGREGATE_NOT_FOUND: str = "AGGREGATE_NOT_FOUND"
    READ_FILE: str = "READ_FILE_ERROR"
    PARSE_YAML: str = "PARSE_YAML_ERROR"
    CONFIG_VALIDATION: str = "VALIDATION_ERROR"


class TranslationError(CollabError):
    """サポート対象の操作だが context が不正で変換できない場合のエラー。"""

    def __init__(self, kind: str, message: str, cause: Exception | None = None) -> None:
        self.kind = kind
        super().__init__(
            code=CollabErrorCodes.TRANSLATION_FAILED,
            message=f"{kind}: {message}",
            cause=cause,
        )


class ValidationFailedError(CollabError):
    """コマンド検証エラーの基底クラス。送信前に拒否され、リトライされない。"""

    def __init__(self, code: str, message: str, element_id: str | None = None) -> None:
        self.element_id = element_id
        super().__init__(code=code, message=message)


class ReferenceNotFoundError(ValidationFailedError):
    """参照先の要素がグラフに存在しない。"""

    def __init__(self, element_id: str) -> None:
        super().__init__(
            code=CollabErrorCodes.REFERENCE_NOT_FOUND,
            message=f"referenced element not found: {element_id}",
            element_id=element_id,
        )


class IncompatibleConnectionError(ValidationFailedError):
    """接続元・接続先の組み合わせが不正。"""

    def __init__(self, source_id: str, target_id: str, reason: str) -> None:
        self.source_id = source_id
        self.target_id = target_id
        super().__init__(
            code=CollabErrorCodes.INCOMPATIBLE_CONNECTION,
            message=f"cannot connect {source_id} -> {target_id}: {reason}",
            element_id=source_id,
        )


class DuplicateElementError(ValidationFailedError):
    """同じ ID の要素が既に存在する。"""

    def __init__(self, element_id: str) -> None:
        super().__init__(
            code=CollabErrorCodes.DUPLICATE_ELEMENT,
            message=f"element already exists: {element_id}",
            element_id=element_id,
        )


class ConcurrencyConflictError(CollabError):
    """楽観的排他制御の競合エラー。

    actual はストアの現在の先頭。ストアが返さなかった場合は -1。
    """

    def __init__(self, aggregate_id: str, expected: int, actual: int) -> None:
        self.aggregate_id = aggregate_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            code=CollabErrorCodes.CONCURRENCY_CONFLICT,
            message=(
                f"sequence conflict on {aggregate_id}: expected={expected}, actual={actual}"
            ),
        )


class DeliveryFailedError(CollabError):
    """一時的な配送失敗。バックオフ付きでリトライされる。"""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(code=CollabErrorCodes.DELIVERY_FAILED, message=message, cause=cause)


class EventStoreError(CollabError):
    """イベントストアがリトライ不能なエラーを返した場合のエラー。"""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(code=CollabErrorCodes.EVENT_STORE_ERROR, message=message, cause=cause)


class DocumentRejectedError(CollabError):
    """保存時の構造チェックで拒否された場合のエラー基底クラス。"""


class PayloadTooLargeError(DocumentRejectedError):
    """コンテンツがバイト数上限を超えている。"""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(
            code=CollabErrorCodes.PAYLOAD_TOO_LARGE,
            message=f"content is {size} bytes (max {limit})",
        )


class TooManyElementsError(DocumentRejectedError):
    """コンテンツの要素数が上限を超えている。"""

    def __init__(self, count: int, limit: int) -> None:
        self.count = count
        self.limit = limit
        super().__init__(
            code=CollabErrorCodes.TOO_MANY_ELEMENTS,
            message=f"content has {count} elements (max {limit})",
        )


class InvalidDocumentError(DocumentRejectedError):
    """コンテンツが BPMN ドキュメントとして不正。"""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(code=CollabErrorCodes.INVALID_DOCUMENT, message=message, cause=cause)


class SnapshotNotFoundError(CollabError):
    """スナップショットが見つからない場合のエラー。"""

    def __init__(self, aggregate_id: str, version: int | None = None) -> None:
        self.aggregate_id = aggregate_id
        self.version = version
        target = aggregate_id if version is None else f"{aggregate_id}@{version}"
        super().__init__(
            code=CollabErrorCodes.SNAPSHOT_NOT_FOUND,
            message=f"snapshot not found: {target}",
        )


class DuplicateSnapshotError(CollabError):
    """同じバージョンのスナップショットが既に存在する。"""

    def __init__(self, aggregate_id: str, version: int) -> None:
        self.aggregate_id = aggregate_id
        self.version = version
        super().__init__(
            code=CollabErrorCodes.DUPLICATE_SNAPSHOT,
            message=f"snapshot already exists: {aggregate_id}@{version}",
        )


class AggregateNotFoundError(CollabError):
    """集約が見つからない場合のエラー。"""

    def __init__(self, aggregate_id: str) -> None:
        self.aggregate_id = aggregate_id
        super().__init__(
            code=CollabErrorCodes.AGGREGATE_NOT_FOUND,
            message=f"aggregate not found: {aggregate_id}",
        )


class ConfigError(CollabError):
    """設定ファイルの読み込み・検証エラー。"""

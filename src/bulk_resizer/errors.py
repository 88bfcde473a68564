"""一括リサイズ処理で使う例外の分類。

- ValidationError: ジョブ開始前の入力検証エラー。パイプラインは開始しない。
- JobError: 1ジョブに閉じたエラー。ジョブの終端状態 ``error`` として記録する。
- PackagingError: アーカイブ作成時のエラー。実行全体を失敗させる。
"""

from __future__ import annotations

from typing import Optional

from PIL import UnidentifiedImageError


class BulkResizerError(Exception):
    """bulk_resizer の基底例外。"""

    category = "unknown"


# ---------------------------------------------------------------------------
# 入力検証
# ---------------------------------------------------------------------------


class ValidationError(BulkResizerError):
    category = "validation"


class NoSources(ValidationError):
    category = "no_sources"

    def __init__(self, message: str = "画像が1件も指定されていません") -> None:
        super().__init__(message)


class NoSizes(ValidationError):
    category = "no_sizes"

    def __init__(self, message: str = "出力サイズが1件も選択されていません") -> None:
        super().__init__(message)


class InvalidSize(ValidationError):
    category = "invalid_size"


class InvalidOption(ValidationError):
    category = "invalid_option"


# ---------------------------------------------------------------------------
# ジョブ単位
# ---------------------------------------------------------------------------


class JobError(BulkResizerError):
    """1ジョブに閉じたエラー。兄弟ジョブは中断しない。"""

    category = "job"
    retryable = False


class DecodeFailure(JobError):
    category = "decode_failure"


class EncodeFailure(JobError):
    category = "encode_failure"
    retryable = True


class ContextUnavailable(JobError):
    """描画先バッファを確保できない（メモリ不足など）。"""

    category = "context_unavailable"
    retryable = True


# ---------------------------------------------------------------------------
# アーカイブ
# ---------------------------------------------------------------------------


class PackagingError(BulkResizerError):
    category = "packaging"


class DuplicatePath(PackagingError):
    category = "duplicate_path"

    def __init__(self, path: str, job_ids: tuple[str, ...] = ()) -> None:
        self.path = path
        self.job_ids = job_ids
        detail = f" (jobs: {', '.join(job_ids)})" if job_ids else ""
        super().__init__(f"アーカイブ内のパスが重複しています: {path}{detail}")


class ArchiveWriteFailure(PackagingError):
    category = "archive_write_failure"


class BatchCancelled(BulkResizerError):
    category = "cancelled"

    def __init__(self, message: str = "処理がキャンセルされました") -> None:
        super().__init__(message)


def describe_error(error: BaseException) -> str:
    """例外から利用者向けの日本語メッセージを生成する。"""
    error_msg = str(error)

    if isinstance(error, NoSources):
        return "画像を追加してから実行してください"
    if isinstance(error, NoSizes):
        return "出力サイズを1つ以上選択してください"
    if isinstance(error, InvalidSize):
        return f"無効なサイズ指定: {error_msg}"
    if isinstance(error, InvalidOption):
        return f"無効なオプション: {error_msg}"
    if isinstance(error, DecodeFailure):
        return f"画像を読み込めません: {error_msg}"
    if isinstance(error, EncodeFailure):
        return f"画像の書き出しに失敗しました: {error_msg}"
    if isinstance(error, ContextUnavailable):
        return f"描画領域を確保できません: {error_msg}"
    if isinstance(error, DuplicatePath):
        return f"{error_msg}。ファイル名パターンかフォルダ構成を見直してください"
    if isinstance(error, ArchiveWriteFailure):
        return f"ZIPの作成に失敗しました: {error_msg}"
    if isinstance(error, BulkResizerError):
        return error_msg

    # ファイル関連エラー
    if isinstance(error, FileNotFoundError):
        return f"ファイルが見つかりません: {error_msg}"
    if isinstance(error, PermissionError):
        return f"アクセス権限がありません: {error_msg}"
    if isinstance(error, IsADirectoryError):
        return f"ディレクトリが指定されました（ファイルを指定してください）: {error_msg}"

    # 画像関連エラー
    if isinstance(error, UnidentifiedImageError):
        return f"画像ファイルとして認識できません: {error_msg}"
    if type(error).__name__ == "DecompressionBombError":
        return f"画像が大きすぎます（圧縮爆弾の可能性）: {error_msg}"

    if isinstance(error, MemoryError):
        return "メモリ不足エラー: 画像が大きすぎるか、使用可能なメモリが不足しています"
    if isinstance(error, OSError):
        if error.errno == 28:  # ENOSPC
            return "ディスク容量が不足しています"
        return f"システムエラー: {error_msg}"
    if isinstance(error, ValueError):
        return f"無効な値: {error_msg}"

    return f"{type(error).__name__}: {error_msg}"


def error_category(error: Optional[BaseException]) -> Optional[str]:
    """例外の分類名を返す。bulk_resizer 以外の例外は ``unknown``。"""
    if error is None:
        return None
    if isinstance(error, BulkResizerError):
        return error.category
    return "unknown"

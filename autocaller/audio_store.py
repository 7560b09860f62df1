"""
音声クリップ保存モジュール (Audio Clip Store Module)

合成した音声をローカルに保存し、Vonage の stream アクションから
取得できるようにします。
"""

import re
import uuid
from pathlib import Path
from typing import Optional


_CLIP_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


class AudioClipStore:
    """
    音声クリップを管理するクラス

    クリップは clip_dir 配下に "<clip_id>.mp3" として保存され、
    GET /audio/<clip_id> で配信されます。
    """

    # クリップ保存ディレクトリ
    DEFAULT_CLIP_DIR = "audio_clips"
    EXTENSION = "mp3"

    def __init__(self, clip_dir: Optional[str] = None):
        """
        AudioClipStoreを初期化

        Args:
            clip_dir: クリップ保存ディレクトリ（オプション）
        """
        self.clip_dir = clip_dir or self.DEFAULT_CLIP_DIR

        # クリップディレクトリを作成
        self._ensure_clip_dir()

    def _ensure_clip_dir(self) -> None:
        """クリップディレクトリが存在することを確認し、なければ作成"""
        Path(self.clip_dir).mkdir(parents=True, exist_ok=True)

    def save(self, audio: bytes) -> str:
        """
        音声データを保存

        Args:
            audio: 音声データ

        Returns:
            クリップID

        Raises:
            OSError: 保存に失敗した場合
        """
        clip_id = uuid.uuid4().hex
        with open(self._file_path(clip_id), "wb") as f:
            f.write(audio)
        return clip_id

    def path_for(self, clip_id: str) -> Optional[Path]:
        """
        クリップIDに対応するファイルパスを取得

        不正な形式のIDや存在しないクリップの場合はNoneを返します。
        """
        if not _CLIP_ID_PATTERN.match(clip_id or ""):
            return None
        path = self._file_path(clip_id)
        return path if path.is_file() else None

    def url_for(self, clip_id: str, base_url: str) -> str:
        return f"{base_url.rstrip('/')}/{clip_id}"

    def _file_path(self, clip_id: str) -> Path:
        return Path(self.clip_dir) / f"{clip_id}.{self.EXTENSION}"

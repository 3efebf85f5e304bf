"""学習ループ全体で使用する例外階層の定義."""


class AceError(Exception):
    """全ての独自例外の基底クラス."""


class ValidationError(AceError):
    """入力の形式が不正な場合の例外. リトライ対象ではない."""


class EmptyQueryError(ValidationError):
    """空または空白のみのクエリが渡された場合の例外."""


class InvalidTrajectoryError(ValidationError):
    """queryまたはresponseが空のTrajectoryが渡された場合の例外."""


class CapacityError(AceError):
    """Playbookが最大サイズに達している場合の例外."""


class NotFoundError(AceError):
    """指定IDのBulletが存在しない場合の例外."""


class DimensionMismatchError(AceError):
    """長さの異なるベクトル同士を比較した場合の例外."""


class ProviderError(AceError):
    """Model Gateway (LLM / Embedding) 呼び出しの失敗を表す例外."""

    def __init__(self, message: str, provider: str = "unknown") -> None:
        """ProviderErrorを初期化する.

        Args:
            message: エラーメッセージ
            provider: 失敗したプロバイダ名
        """
        super().__init__(message)
        self.provider = provider


class _WrappedError(AceError):
    """原因となった例外を保持するラッパー例外."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class GenerationError(_WrappedError):
    """Generatorのゲートウェイ呼び出しが失敗した場合の例外."""


class ReflectionError(_WrappedError):
    """Reflectorのゲートウェイ呼び出しが失敗した場合の例外."""


class CurationError(_WrappedError):
    """Curatorの合成処理のゲートウェイ呼び出しが失敗した場合の例外."""

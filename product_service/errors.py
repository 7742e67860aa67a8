"""
Product Service — 例外定義

HTTP 層はこれらを区別してステータスコードに変換する。
  NotFound          → 404
  DeliveryFailed    → 呼び出し元には見せない（ログのみ）
  MalformedMessage  → サブスクライバ側でスキップ
  BrokerUnavailable / SubscriberFailed → 起動・停止の失敗（外部監視で再起動）
"""


class ProductServiceError(Exception):
    """サービス固有例外の基底クラス"""


class NotFound(ProductServiceError):
    """指定 ID の商品がストアに存在しない"""

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class DeliveryFailed(ProductServiceError):
    """ブローカーへのイベント送信が失敗した（ミューテーションは巻き戻さない）"""


class MalformedMessage(ProductServiceError):
    """受信したメッセージがイベントエンベロープとして解釈できない"""


class BrokerUnavailable(ProductServiceError):
    """ブローカーに接続できない"""


class SubscriberFailed(ProductServiceError):
    """サブスクライバが FAILED 状態に遷移した"""

# backend/dental_notify/notifications/__init__.py

"""
通知コア。

構成:
- schemas: チャンネル・通知種別・配信ログ・ディスパッチ結果などの共通スキーマ
- errors: 例外体系
- config: クリニック情報とリトライ方針の設定
- channels: チャンネルアダプタのインターフェースと呼び出し境界
- content: 通知種別ごとの本文生成
- delivery_log: 配信ログストア
- directory: 患者・予約の参照インターフェース
- dispatcher: LINE → Email → SMS のフォールバック配信
- retry: 同一チャンネル再送のスケジューラ
- factory: サービス群の組み立て
- router: 送信 API
"""

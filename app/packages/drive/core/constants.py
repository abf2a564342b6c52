"""常量定义：集中维护状态码与内容类型等魔法值。"""

HTTP_STATUS_OK = 200

OCTET_STREAM = "application/octet-stream"
ZIP_MEDIA_TYPE = "application/zip"

OWNER_HEADER = "X-Owner-Id"

# 名称与路径长度上限（与 file_nodes 列宽一致）
MAX_NAME_LENGTH = 255
MAX_PATH_LENGTH = 1024

# 内容哈希：仅字母数字，长度与 content_hash 列宽一致
MAX_HASH_LENGTH = 128

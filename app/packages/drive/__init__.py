"""内容寻址网盘业务包：目录树一致性、打包下载、合并搜索与按哈希取回。"""

from app.packages.types import AppPackage

from .api.v1 import api_router
from .core.config import get_settings
from .core.exceptions import generic_exception_handler, http_exception_handler
from .core.lifecycle import shutdown, startup
from .core.logger import logger, setup_logging
from .core.responses import create_response

package = AppPackage(
    name="drive",
    api_router=api_router,
    get_settings=get_settings,
    setup_logging=setup_logging,
    logger=logger,
    on_startup=startup,
    on_shutdown=shutdown,
    create_response=create_response,
    http_exception_handler=http_exception_handler,
    generic_exception_handler=generic_exception_handler,
)

__all__ = ["package", "api_router", "get_settings"]

"""Node handler registry: maps node types to pluggable handler callables."""

import importlib
import inspect
import threading
from typing import Callable, Dict, List, Optional, Any
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..storage.database import get_db
from ..storage.models import NodeTypeModel
from .exceptions import NodeRegistryError
from .logging import get_logger

logger = get_logger(__name__)

NodeHandler = Callable[..., Any]


class NodeHandlerRegistry:
    """Registry of node handlers.

    A handler is called as ``handler(value, config=..., credentials=...,
    context=...)``. Handler metadata (module and function name) is persisted
    so node types are listed across restarts; callables live in an in-memory
    cache and are re-imported from their module when missing.
    """

    def __init__(self, db_session: Optional[Session] = None):
        """Initialize the registry.

        Args:
            db_session: Optional database session. If not provided, will create new sessions as needed.
        """
        self._db_session = db_session
        self._memory_cache: Dict[str, NodeHandler] = {}
        self._lock = threading.RLock()

    def _get_session(self) -> Session:
        """Get database session, creating a new one if needed."""
        if self._db_session:
            return self._db_session
        return next(get_db())

    def _close(self, session: Session):
        if not self._db_session:
            session.close()

    @staticmethod
    def _normalize(node_type: str) -> str:
        if not node_type or not node_type.strip():
            raise NodeRegistryError("Node type cannot be empty")
        return node_type.strip()

    def register_handler(self, node_type: str, handler: NodeHandler, description: str = "",
                         replace: bool = False) -> None:
        """Register a callable as the handler of a node type.

        Args:
            node_type: Node type key, e.g. ``IF_ELSE``
            handler: Callable invoked with the resolved input
            description: Optional description shown by ``GET /node-types``
            replace: Overwrite an existing registration instead of failing

        Raises:
            NodeRegistryError: If the type is already registered or the handler is invalid
        """
        node_type = self._normalize(node_type)

        if not callable(handler):
            raise NodeRegistryError(f"Handler for '{node_type}' must be callable",
                                    node_type=node_type, operation="register")

        try:
            sig = inspect.signature(handler)
            if len(sig.parameters) == 0:
                raise NodeRegistryError(f"Handler for '{node_type}' must accept the resolved input",
                                        node_type=node_type, operation="register")
        except (ValueError, TypeError) as e:
            raise NodeRegistryError(f"Cannot inspect handler signature for '{node_type}': {e}",
                                    node_type=node_type, operation="register")

        handler_module = getattr(handler, "__module__", None) or ""
        handler_name = getattr(handler, "__qualname__", None) or getattr(handler, "__name__", "") or type(handler).__name__

        with self._lock:
            session = self._get_session()
            try:
                existing = session.query(NodeTypeModel).filter_by(type=node_type).first()
                if existing and not replace:
                    raise NodeRegistryError(f"Node type '{node_type}' is already registered",
                                            node_type=node_type, operation="register")
                if existing:
                    existing.description = description.strip() if description else existing.description
                    existing.handler_module = handler_module
                    existing.handler_name = handler_name
                else:
                    session.add(NodeTypeModel(
                        type=node_type,
                        description=description.strip() if description else "",
                        handler_module=handler_module,
                        handler_name=handler_name
                    ))
                session.commit()

                self._memory_cache[node_type] = handler
                logger.info(f"Registered node type '{node_type}' -> {handler_module}.{handler_name}")

            except SQLAlchemyError as e:
                session.rollback()
                raise NodeRegistryError(f"Failed to register node type '{node_type}': {e}",
                                        node_type=node_type, operation="register")
            finally:
                self._close(session)

    def get_handler(self, node_type: str) -> NodeHandler:
        """Retrieve the handler of a node type.

        Raises:
            NodeRegistryError: If the type is not registered or its handler cannot be loaded
        """
        node_type = self._normalize(node_type)

        handler = self._memory_cache.get(node_type)
        if handler is not None:
            return handler

        session = self._get_session()
        try:
            model = session.query(NodeTypeModel).filter_by(type=node_type).first()
            if not model:
                raise NodeRegistryError(f"Node type '{node_type}' is not registered",
                                        node_type=node_type, operation="get")
            handler = self._import_handler(node_type, model.handler_module, model.handler_name)
        except SQLAlchemyError as e:
            raise NodeRegistryError(f"Failed to load node type '{node_type}': {e}",
                                    node_type=node_type, operation="get")
        finally:
            self._close(session)

        with self._lock:
            self._memory_cache[node_type] = handler
        logger.debug(f"Loaded handler for '{node_type}' from {model.handler_module}.{model.handler_name}")
        return handler

    def find_handler(self, node_type: str) -> Optional[NodeHandler]:
        """Like ``get_handler`` but returns None for unknown types."""
        try:
            return self.get_handler(node_type)
        except NodeRegistryError as e:
            logger.warning(f"No handler for node type '{node_type}': {e.message}")
            return None

    @staticmethod
    def _import_handler(node_type: str, module_name: str, qualname: str) -> NodeHandler:
        try:
            target: Any = importlib.import_module(module_name)
            for part in qualname.split("."):
                target = getattr(target, part)
        except ImportError as e:
            raise NodeRegistryError(f"Cannot import module for node type '{node_type}': {e}",
                                    node_type=node_type, operation="get")
        except AttributeError as e:
            raise NodeRegistryError(f"Handler not found in module for node type '{node_type}': {e}",
                                    node_type=node_type, operation="get")
        if not callable(target):
            raise NodeRegistryError(f"Handler for '{node_type}' is not callable",
                                    node_type=node_type, operation="get")
        return target

    def has_handler(self, node_type: str) -> bool:
        if not node_type or not node_type.strip():
            return False
        return node_type.strip() in self.known_node_types()

    def known_node_types(self) -> List[str]:
        """All registered node types, cached or persisted."""
        types = set(self._memory_cache)
        session = self._get_session()
        try:
            types.update(row.type for row in session.query(NodeTypeModel.type).all())
        except SQLAlchemyError as e:
            logger.error(f"Failed to list persisted node types: {e}")
        finally:
            self._close(session)
        return sorted(types)

    def list_node_types(self) -> List[Dict[str, Any]]:
        """List registered node types with their metadata."""
        session = self._get_session()
        try:
            rows = session.query(NodeTypeModel).order_by(NodeTypeModel.type).all()
            listed = {
                row.type: {
                    "type": row.type,
                    "description": row.description or "",
                    "module": row.handler_module,
                    "handler": row.handler_name,
                    "loaded": row.type in self._memory_cache,
                }
                for row in rows
            }
        except SQLAlchemyError as e:
            raise NodeRegistryError(f"Failed to list node types: {e}", operation="list")
        finally:
            self._close(session)
        return [listed[key] for key in sorted(listed)]

    def unregister_handler(self, node_type: str) -> bool:
        """Remove a node type. Returns False when it was not registered."""
        node_type = self._normalize(node_type)
        with self._lock:
            session = self._get_session()
            try:
                model = session.query(NodeTypeModel).filter_by(type=node_type).first()
                removed = self._memory_cache.pop(node_type, None) is not None
                if model:
                    session.delete(model)
                    session.commit()
                    removed = True
                if removed:
                    logger.info(f"Unregistered node type '{node_type}'")
                return removed
            except SQLAlchemyError as e:
                session.rollback()
                raise NodeRegistryError(f"Failed to unregister node type '{node_type}': {e}",
                                        node_type=node_type, operation="unregister")
            finally:
                self._close(session)

    def clear_cache(self) -> None:
        """Clear the in-memory handler cache."""
        with self._lock:
            self._memory_cache.clear()
        logger.debug("Node registry memory cache cleared")

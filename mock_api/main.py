
from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional
from datetime import date, datetime, timedelta
import os
import uvicorn

SERVICE_PATH = "/WcfServiceLibraryVerial"
MOCK_SESSION = os.environ.get("VERIAL_MOCK_SESSION", "18")
TOTAL_ARTICLES = int(os.environ.get("VERIAL_MOCK_ARTICLES", "250"))

app = FastAPI(
    title="Mock Verial API",
    description="ERP Verial simulado para probar la sincronización",
    version="1.0.0"
)


class FailureSimulation(BaseModel):
    """Fallos a inyectar en las siguientes llamadas al servicio"""
    count: int = Field(1, ge=1, le=100, description="Número de llamadas afectadas")
    status_code: Optional[int] = Field(None, ge=400, le=599, description="Estado HTTP a devolver")
    codigo: Optional[int] = Field(None, description="Codigo de InfoError a devolver con HTTP 200")
    descripcion: str = "Error simulado"
    endpoint: Optional[str] = Field(None, description="Limitar a un endpoint concreto")


class NuevoCliente(BaseModel):
    model_config = ConfigDict(extra="allow")

    sesionwcf: int
    Nombre: str = Field(..., min_length=1)
    NIF: Optional[str] = None
    Email: Optional[str] = None
    Id: int = 0


def _build_articles(total: int) -> List[Dict[str, Any]]:
    base_day = date(2026, 1, 1)
    return [
        {
            "Id": index,
            "Nombre": f"Artículo {index}",
            "ReferenciaBarras": f"84{index:011d}",
            "PVP": round(5 + (index % 50) * 1.75, 2),
            "Stock": (index * 7) % 40,
            "ID_Categoria": 1 + index % 5,
            "FechaModificacion": (base_day + timedelta(days=index % 60)).isoformat(),
        }
        for index in range(1, total + 1)
    ]


ARTICLES_DB = _build_articles(TOTAL_ARTICLES)
CUSTOMERS_DB: List[Dict[str, Any]] = []
PENDING_FAILURES: List[FailureSimulation] = []

PAISES = [
    {"Id": 1, "Nombre": "España", "ISO2": "ES"},
    {"Id": 2, "Nombre": "Portugal", "ISO2": "PT"},
    {"Id": 3, "Nombre": "Francia", "ISO2": "FR"},
]


def ok(**payload):
    return {"InfoError": {"Codigo": 0, "Descripcion": ""}, **payload}


def verial_error(codigo: int, descripcion: str):
    return JSONResponse(content={"InfoError": {"Codigo": codigo, "Descripcion": descripcion}})


def check_call(endpoint: str, session: Optional[str]):
    """
    Aplica fallos simulados pendientes y valida la sesión

    Returns:
        Respuesta de error, o None si la llamada debe continuar
    """
    for failure in PENDING_FAILURES:
        if failure.endpoint in (None, endpoint):
            failure.count -= 1
            if failure.count <= 0:
                PENDING_FAILURES.remove(failure)
            if failure.status_code is not None:
                return JSONResponse(status_code=failure.status_code,
                                    content={"detail": failure.descripcion})
            return verial_error(failure.codigo if failure.codigo is not None else -3,
                                failure.descripcion)

    if session is None or str(session) != MOCK_SESSION:
        return verial_error(-1, "Número de sesión no válido")
    return None


def filter_articles(fecha: Optional[str]) -> List[Dict[str, Any]]:
    if not fecha:
        return ARTICLES_DB
    return [a for a in ARTICLES_DB if a["FechaModificacion"] >= fecha]


@app.get("/")
async def root():
    """Endpoint raíz con información de la API"""
    return {
        "message": "Mock Verial API",
        "version": "1.0.0",
        "endpoints": {
            "paises": f"{SERVICE_PATH}/GetPaisesWS",
            "num_articulos": f"{SERVICE_PATH}/GetNumArticulosWS",
            "articulos": f"{SERVICE_PATH}/GetArticulosWS",
            "stock": f"{SERVICE_PATH}/GetStockArticulosWS",
            "nuevo_cliente": f"{SERVICE_PATH}/NuevoClienteWS",
            "health": "/health",
            "docs": "/docs"
        }
    }


@app.get("/health")
async def health_check():
    """Health check para verificar que la API está funcionando"""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "articles_count": len(ARTICLES_DB),
        "pending_failures": sum(f.count for f in PENDING_FAILURES)
    }


@app.get(f"{SERVICE_PATH}/GetPaisesWS")
async def get_paises(x: Optional[str] = Query(None, description="Número de sesión")):
    error = check_call("GetPaisesWS", x)
    if error is not None:
        return error
    return ok(Paises=PAISES)


@app.get(f"{SERVICE_PATH}/GetNumArticulosWS")
async def get_num_articulos(
    x: Optional[str] = Query(None, description="Número de sesión"),
    fecha: Optional[str] = Query(None, description="Artículos modificados desde (YYYY-MM-DD)"),
    hora: Optional[str] = Query(None, description="Hora del filtro (HH:MM:SS)")
):
    error = check_call("GetNumArticulosWS", x)
    if error is not None:
        return error
    return ok(NumArticulos=len(filter_articles(fecha)))


@app.get(f"{SERVICE_PATH}/GetArticulosWS")
async def get_articulos(
    x: Optional[str] = Query(None, description="Número de sesión"),
    inicio: Optional[int] = Query(None, ge=1, description="Primer artículo (1-based)"),
    fin: Optional[int] = Query(None, ge=1, description="Último artículo (incluido)"),
    fecha: Optional[str] = Query(None, description="Artículos modificados desde (YYYY-MM-DD)"),
    hora: Optional[str] = Query(None, description="Hora del filtro (HH:MM:SS)")
):
    """
    Lista de artículos con paginación inicio/fin

    Sin inicio/fin devuelve todos los artículos
    """
    error = check_call("GetArticulosWS", x)
    if error is not None:
        return error

    articles = filter_articles(fecha)
    if inicio is not None:
        if fin is not None and fin < inicio:
            return verial_error(-4, "El parámetro fin debe ser mayor o igual que inicio")
        articles = articles[inicio - 1:fin]
    return ok(Articulos=articles)


@app.get(f"{SERVICE_PATH}/GetStockArticulosWS")
async def get_stock_articulos(
    x: Optional[str] = Query(None, description="Número de sesión"),
    id_articulo: int = Query(0, ge=0, description="Id del artículo (0 = todos)")
):
    error = check_call("GetStockArticulosWS", x)
    if error is not None:
        return error

    articles = ARTICLES_DB
    if id_articulo:
        articles = [a for a in ARTICLES_DB if a["Id"] == id_articulo]
        if not articles:
            raise HTTPException(
                status_code=404,
                detail=f"Artículo con ID {id_articulo} no encontrado"
            )
    return ok(StockArticulos=[{"ID_Articulo": a["Id"], "Stock": a["Stock"]} for a in articles])


@app.post(f"{SERVICE_PATH}/NuevoClienteWS")
async def nuevo_cliente(cliente: NuevoCliente):
    """
    Crea o actualiza un cliente

    La sesión viaja en el cuerpo (sesionwcf); Id = 0 crea un cliente nuevo
    """
    error = check_call("NuevoClienteWS", str(cliente.sesionwcf))
    if error is not None:
        return error

    data = cliente.model_dump(exclude={"sesionwcf"})
    if data["Id"]:
        existing = next((c for c in CUSTOMERS_DB if c["Id"] == data["Id"]), None)
        if existing is None:
            return verial_error(-5, f"Cliente {data['Id']} no existe")
        existing.update(data)
        return ok(Id=existing["Id"])

    data["Id"] = len(CUSTOMERS_DB) + 1
    CUSTOMERS_DB.append(data)
    return ok(Id=data["Id"])


@app.post("/simulate/failures")
async def simulate_failures(failure: FailureSimulation):
    """
    Encola fallos para las siguientes llamadas

    Ejemplos:
    - {"count": 3, "status_code": 503}: tres respuestas HTTP 503
    - {"count": 1, "codigo": -3, "descripcion": "Tiempo de espera agotado"}
    """
    PENDING_FAILURES.append(failure)
    return {
        "message": "Fallos encolados",
        "pending": sum(f.count for f in PENDING_FAILURES)
    }


@app.post("/simulate/reset")
async def simulate_reset(articles: int = Body(TOTAL_ARTICLES, embed=True, ge=0)):
    """Restablece artículos, clientes y fallos pendientes"""
    ARTICLES_DB[:] = _build_articles(articles)
    CUSTOMERS_DB.clear()
    PENDING_FAILURES.clear()
    return {"message": "Estado restablecido", "articles_count": len(ARTICLES_DB)}


if __name__ == "__main__":
    uvicorn.run(
        "mock_api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )

"""
Core Synthesis Web API
FastAPI application for cataloging sediment cores and building age models
"""

from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from typing import Any, Literal, Optional, Union
import logging
import os

from . import ai_service, store
from .agemodel import (
    DEFAULT_AGE_DECIMALS,
    MIN_TIE_POINTS,
    DegenerateTiePointsError,
    DelegateFailure,
    LocalAgeModel,
    validate_tie_points,
)
from .ai_service import AINotConfiguredError, AIServiceError
from .delegate import DelegatedAgeModel
from .models import (
    Core,
    Folder,
    Location,
    Microfossil,
    ProxyRecord,
    SectionFields,
    Section,
    SpliceInterval,
    TiePoint,
    merge_record,
    merge_records,
)
from .sample_data import SAMPLE_CORES
from .splice import assemble, composite_proxies, set_interval
from .store import DuplicateRecordError

logger = logging.getLogger(__name__)

AGE_DECIMALS = int(os.environ.get('CORESYNTH_AGE_DECIMALS', DEFAULT_AGE_DECIMALS))
DEPTH_TOLERANCE = float(os.environ.get('CORESYNTH_DEPTH_TOLERANCE', 0.0))

app = FastAPI(title="Core Synthesis")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type"],
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_conn():
    conn = store.get_db()
    try:
        yield conn
    finally:
        conn.close()


def get_ai_client():
    return ai_service.get_client()


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class ErrorResponse(BaseModel):
    error: str

class DeleteResponse(BaseModel):
    message: str
    id: str

class HealthResponse(BaseModel):
    status: str
    ai_configured: bool

class FolderCreate(BaseModel):
    user_id: str
    name: str

class FolderRename(BaseModel):
    name: str

class CoreUpdate(BaseModel):
    name: str
    location: Location
    water_depth: float
    project: str = ''
    folder_id: Optional[str] = None

class CoreMove(BaseModel):
    folder_id: Optional[str] = None

class DataPointBatch(BaseModel):
    data_points: list[ProxyRecord]

class TiePointSet(BaseModel):
    tie_points: list[TiePoint]

class SpliceIntervalUpdate(BaseModel):
    start: Optional[Union[str, float]] = None
    end: Optional[Union[str, float]] = None

class AgeModelRequest(BaseModel):
    strategy: Literal['local', 'ai'] = 'local'

class AgeModelResponse(BaseModel):
    core_id: str
    strategy: str
    created_at: str
    sections: list[dict[str, Any]]

class CompositeResponse(BaseModel):
    core_id: str
    calibrated: bool
    strategy: Optional[str] = None
    proxies: list[str]
    series: list[dict[str, Any]]

class SummaryResponse(BaseModel):
    section_id: str
    summary: str

class AskRequest(BaseModel):
    query: str

class AnswerResponse(BaseModel):
    answer: str

class HeaderMapRequest(BaseModel):
    headers: list[str]

class HeaderMapResponse(BaseModel):
    mapping: dict[str, Optional[str]]

class IdentifyRequest(BaseModel):
    image_base64: str
    mime_type: str

class IdentifyResponse(BaseModel):
    analysis: str
    parsed: dict[str, Any]

class SampleDataRequest(BaseModel):
    user_id: str


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@app.exception_handler(RequestValidationError)
def _invalid_request(request, exc):
    # input values may be non-finite floats, which JSON cannot carry
    errors = [{'loc': list(e['loc']), 'msg': e['msg'], 'type': e['type']}
              for e in exc.errors()]
    return JSONResponse({'error': 'Invalid request', 'detail': errors}, status_code=422)


@app.exception_handler(AINotConfiguredError)
def _ai_not_configured(request, exc):
    return JSONResponse({'error': str(exc)}, status_code=503)


@app.exception_handler(AIServiceError)
def _ai_failed(request, exc):
    logger.error("AI service error on %s: %s", request.url.path, exc)
    return JSONResponse({'error': str(exc)}, status_code=502)


@app.exception_handler(DuplicateRecordError)
def _duplicate(request, exc):
    return JSONResponse({'error': str(exc)}, status_code=409)


@app.exception_handler(DegenerateTiePointsError)
def _degenerate(request, exc):
    return JSONResponse({'error': str(exc)}, status_code=422)


def _not_found(what):
    return JSONResponse({'error': f'{what} not found'}, status_code=404)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get('/api/health', response_model=HealthResponse)
def api_health():
    return {'status': 'ok', 'ai_configured': ai_service.ai_configured()}


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------

@app.get('/api/folders', response_model=list[Folder])
def api_list_folders(user_id: str, conn=Depends(get_conn)):
    return store.list_folders(conn, user_id)


@app.post('/api/folders', status_code=201, response_model=Folder)
def api_create_folder(body: FolderCreate, conn=Depends(get_conn)):
    return store.create_folder(conn, body.user_id, body.name)


@app.put('/api/folders/{folder_id}', response_model=Folder,
         responses={404: {"model": ErrorResponse}})
def api_rename_folder(folder_id: str, body: FolderRename, conn=Depends(get_conn)):
    folder = store.rename_folder(conn, folder_id, body.name)
    if folder is None:
        return _not_found('Folder')
    return folder


@app.delete('/api/folders/{folder_id}', response_model=DeleteResponse,
            responses={404: {"model": ErrorResponse}})
def api_delete_folder(folder_id: str, conn=Depends(get_conn)):
    if not store.delete_folder(conn, folder_id):
        return _not_found('Folder')
    return {'message': 'Folder deleted', 'id': folder_id}


# ---------------------------------------------------------------------------
# Cores
# ---------------------------------------------------------------------------

@app.get('/api/cores', response_model=list[Core])
def api_list_cores(user_id: str, conn=Depends(get_conn)):
    return store.list_cores(conn, user_id)


@app.post('/api/cores', status_code=201, response_model=Core,
          responses={409: {"model": ErrorResponse}})
def api_create_core(body: Core, conn=Depends(get_conn)):
    return store.create_core(conn, body)


@app.get('/api/cores/{core_id}', response_model=Core,
         responses={404: {"model": ErrorResponse}})
def api_get_core(core_id: str, conn=Depends(get_conn)):
    core = store.get_core(conn, core_id)
    if core is None:
        return _not_found('Core')
    return core


@app.put('/api/cores/{core_id}', response_model=Core,
         responses={404: {"model": ErrorResponse}})
def api_update_core(core_id: str, body: CoreUpdate, conn=Depends(get_conn)):
    existing = store.get_core(conn, core_id)
    if existing is None:
        return _not_found('Core')
    core = Core(**{**existing.model_dump(), **body.model_dump(exclude_unset=True)})
    return store.update_core(conn, core)


@app.put('/api/cores/{core_id}/folder', response_model=Core,
         responses={404: {"model": ErrorResponse}})
def api_move_core(core_id: str, body: CoreMove, conn=Depends(get_conn)):
    if body.folder_id is not None and store.get_folder(conn, body.folder_id) is None:
        return _not_found('Folder')
    core = store.move_core(conn, core_id, body.folder_id)
    if core is None:
        return _not_found('Core')
    return core


@app.delete('/api/cores/{core_id}', response_model=DeleteResponse,
            responses={404: {"model": ErrorResponse}})
def api_delete_core(core_id: str, conn=Depends(get_conn)):
    if not store.delete_core(conn, core_id):
        return _not_found('Core')
    return {'message': 'Core deleted', 'id': core_id}


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

@app.get('/api/cores/{core_id}/sections',
         responses={404: {"model": ErrorResponse}})
def api_list_sections(core_id: str, conn=Depends(get_conn)):
    if store.get_core(conn, core_id) is None:
        return _not_found('Core')
    return [s.to_dict() for s in store.list_sections(conn, core_id)]


@app.post('/api/cores/{core_id}/sections', status_code=201,
          responses={201: {"model": Section}, 404: {"model": ErrorResponse}})
def api_create_section(core_id: str, body: SectionFields, conn=Depends(get_conn)):
    if store.get_core(conn, core_id) is None:
        return _not_found('Core')
    section = Section(id='', core_id=core_id, **body.model_dump())
    return store.create_section(conn, section).to_dict()


@app.get('/api/sections/{section_id}',
         responses={200: {"model": Section}, 404: {"model": ErrorResponse}})
def api_get_section(section_id: str, conn=Depends(get_conn)):
    section = store.get_section(conn, section_id)
    if section is None:
        return _not_found('Section')
    return section.to_dict()


@app.put('/api/sections/{section_id}',
         responses={200: {"model": Section}, 404: {"model": ErrorResponse}})
def api_update_section(section_id: str, body: SectionFields, conn=Depends(get_conn)):
    existing = store.get_section(conn, section_id)
    if existing is None:
        return _not_found('Section')
    section = Section(id=section_id, core_id=existing.core_id, created_at=existing.created_at,
                      **body.model_dump())
    return store.update_section(conn, section).to_dict()


@app.delete('/api/sections/{section_id}', response_model=DeleteResponse,
            responses={404: {"model": ErrorResponse}})
def api_delete_section(section_id: str, conn=Depends(get_conn)):
    if not store.delete_section(conn, section_id):
        return _not_found('Section')
    return {'message': 'Section deleted', 'id': section_id}


@app.post('/api/sections/{section_id}/data-points',
          responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}})
def api_add_data_point(section_id: str, body: ProxyRecord, conn=Depends(get_conn)):
    """Add a data point, or merge it into the point at the same depth."""
    section = store.get_section(conn, section_id)
    if section is None:
        return _not_found('Section')
    try:
        points, updated = merge_record(section.data_points, body, tolerance=DEPTH_TOLERANCE)
    except ValueError as e:
        return JSONResponse({'error': str(e)}, status_code=400)

    saved = store.update_section(conn, section.model_copy(update={'data_points': points}))
    action = 'updated' if updated else 'added'
    return {
        'message': f'Data point at depth {body.depth:g} {action}.',
        'updated': updated,
        'section': saved.to_dict(),
    }


@app.post('/api/sections/{section_id}/data-points/batch',
          responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}})
def api_import_data_points(section_id: str, body: DataPointBatch, conn=Depends(get_conn)):
    """Merge imported rows (already mapped to proxy keys) by depth."""
    section = store.get_section(conn, section_id)
    if section is None:
        return _not_found('Section')
    points, loaded, skipped = merge_records(section.data_points, body.data_points,
                                            tolerance=DEPTH_TOLERANCE)
    if not loaded:
        return JSONResponse(
            {'error': 'No valid data points could be parsed. Ensure a depth column is mapped.'},
            status_code=400)

    saved = store.update_section(conn, section.model_copy(update={'data_points': points}))
    logger.info("Imported %d data point(s) into section %s (%d skipped)",
                loaded, section_id, skipped)
    return {
        'message': f'{loaded} data points loaded/updated successfully.',
        'loaded': loaded,
        'skipped': skipped,
        'section': saved.to_dict(),
    }


# ---------------------------------------------------------------------------
# Microfossil reference
# ---------------------------------------------------------------------------

@app.get('/api/microfossils', response_model=list[Microfossil])
def api_list_microfossils(conn=Depends(get_conn)):
    return store.list_microfossils(conn)


@app.post('/api/microfossils', status_code=201, response_model=Microfossil,
          responses={409: {"model": ErrorResponse}})
def api_add_microfossil(body: Microfossil, conn=Depends(get_conn)):
    return store.add_microfossil(conn, body)


# ---------------------------------------------------------------------------
# Core synthesis: tie-points, splice intervals, age model, composite
# ---------------------------------------------------------------------------

@app.get('/api/cores/{core_id}/tie-points', response_model=list[TiePoint],
         responses={404: {"model": ErrorResponse}})
def api_get_tie_points(core_id: str, conn=Depends(get_conn)):
    if store.get_core(conn, core_id) is None:
        return _not_found('Core')
    return store.list_tie_points(conn, core_id)


@app.put('/api/cores/{core_id}/tie-points', response_model=list[TiePoint],
         responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse},
                    422: {"model": ErrorResponse}})
def api_replace_tie_points(core_id: str, body: TiePointSet, conn=Depends(get_conn)):
    if store.get_core(conn, core_id) is None:
        return _not_found('Core')
    section_ids = {s.id for s in store.list_sections(conn, core_id)}
    unknown = sorted({tp.section_id for tp in body.tie_points} - section_ids)
    if unknown:
        return JSONResponse({'error': f'Unknown section(s) for core {core_id}: {", ".join(unknown)}'},
                            status_code=400)
    validate_tie_points(body.tie_points)
    return store.replace_tie_points(conn, core_id, body.tie_points)


@app.get('/api/cores/{core_id}/splice-intervals', response_model=list[SpliceInterval],
         responses={404: {"model": ErrorResponse}})
def api_get_splice_intervals(core_id: str, conn=Depends(get_conn)):
    """One interval per section; unconfigured bounds are null."""
    if store.get_core(conn, core_id) is None:
        return _not_found('Core')
    intervals = store.get_splice_intervals(conn, core_id)
    return [intervals.get(s.id, SpliceInterval(section_id=s.id))
            for s in store.list_sections(conn, core_id)]


@app.put('/api/cores/{core_id}/splice-intervals/{section_id}', response_model=SpliceInterval,
         responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}})
def api_set_splice_interval(core_id: str, section_id: str, body: SpliceIntervalUpdate,
                            conn=Depends(get_conn)):
    """Set splice bounds from raw input; an empty string clears a bound."""
    section = store.get_section(conn, section_id)
    if section is None or section.core_id != core_id:
        return _not_found('Section')

    intervals = store.get_splice_intervals(conn, core_id)
    try:
        for field in ('start', 'end'):
            if field in body.model_fields_set:
                intervals[section_id] = set_interval(intervals, section_id, field,
                                                     getattr(body, field))
    except ValueError as e:
        return JSONResponse({'error': str(e)}, status_code=400)

    interval = intervals.get(section_id, SpliceInterval(section_id=section_id))
    return store.save_splice_interval(conn, core_id, interval)


@app.post('/api/cores/{core_id}/age-model',
          responses={200: {"model": AgeModelResponse}, 400: {"model": ErrorResponse},
                     404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}})
def api_generate_age_model(core_id: str, body: Optional[AgeModelRequest] = None,
                           conn=Depends(get_conn), client=Depends(get_ai_client)):
    """Calibrate every section of a core and keep the result as the last good run.

    A failed AI calibration leaves the previous result in place.
    """
    if store.get_core(conn, core_id) is None:
        return _not_found('Core')
    strategy = body.strategy if body else 'local'

    sections = store.list_sections(conn, core_id)
    tie_points = store.list_tie_points(conn, core_id)
    if len(tie_points) < MIN_TIE_POINTS:
        return JSONResponse(
            {'error': 'At least two tie-points are required to generate an age model.'},
            status_code=400)

    if strategy == 'ai':
        model = DelegatedAgeModel(client, decimals=AGE_DECIMALS)
    else:
        model = LocalAgeModel(decimals=AGE_DECIMALS)

    try:
        calibrated = model.calibrate(sections, tie_points)
    except DelegateFailure as e:
        logger.warning("Age model for core %s failed: %s", core_id, e)
        return JSONResponse({'error': str(e)}, status_code=502)

    store.save_calibration(conn, core_id, model.name, calibrated)
    _, _, created_at = store.get_calibration(conn, core_id)
    logger.info("Age model for core %s generated with %s strategy", core_id, model.name)
    return {
        'core_id': core_id,
        'strategy': model.name,
        'created_at': created_at,
        'sections': [s.to_dict() for s in calibrated],
    }


@app.get('/api/cores/{core_id}/age-model',
         responses={200: {"model": AgeModelResponse}, 404: {"model": ErrorResponse}})
def api_get_age_model(core_id: str, conn=Depends(get_conn)):
    calibration = store.get_calibration(conn, core_id)
    if calibration is None:
        return _not_found('Age model')
    strategy, sections, created_at = calibration
    return {
        'core_id': core_id,
        'strategy': strategy,
        'created_at': created_at,
        'sections': [s.to_dict() for s in sections],
    }


@app.get('/api/cores/{core_id}/composite', response_model=CompositeResponse,
         responses={404: {"model": ErrorResponse}})
def api_composite(core_id: str, conn=Depends(get_conn)):
    """Composite splice from the last good age model and the current intervals."""
    if store.get_core(conn, core_id) is None:
        return _not_found('Core')
    calibration = store.get_calibration(conn, core_id)
    strategy, calibrated = (calibration[0], calibration[1]) if calibration else (None, None)
    series = assemble(calibrated, store.get_splice_intervals(conn, core_id))
    return {
        'core_id': core_id,
        'calibrated': calibrated is not None,
        'strategy': strategy,
        'proxies': composite_proxies(series),
        'series': [r.to_dict() for r in series],
    }


# ---------------------------------------------------------------------------
# AI assistance
# ---------------------------------------------------------------------------

@app.post('/api/sections/{section_id}/summary', response_model=SummaryResponse,
          responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}})
def api_section_summary(section_id: str, conn=Depends(get_conn), client=Depends(get_ai_client)):
    section = store.get_section(conn, section_id)
    if section is None:
        return _not_found('Section')
    summary = ai_service.generate_section_summary(client, section,
                                                  store.list_microfossils(conn))
    store.update_section(conn, section.model_copy(update={'summary': summary}))
    return {'section_id': section_id, 'summary': summary}


@app.post('/api/sections/{section_id}/ask', response_model=AnswerResponse,
          responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}})
def api_section_ask(section_id: str, body: AskRequest, conn=Depends(get_conn),
                    client=Depends(get_ai_client)):
    section = store.get_section(conn, section_id)
    if section is None:
        return _not_found('Section')
    return {'answer': ai_service.answer_section_question(client, section, body.query)}


@app.post('/api/csv/map-headers', response_model=HeaderMapResponse)
def api_map_csv_headers(body: HeaderMapRequest, client=Depends(get_ai_client)):
    return {'mapping': ai_service.map_csv_headers(client, body.headers)}


@app.post('/api/microfossils/identify', response_model=IdentifyResponse,
          responses={502: {"model": ErrorResponse}})
def api_identify_microfossil(body: IdentifyRequest, client=Depends(get_ai_client)):
    analysis = ai_service.identify_fossil_from_image(client, body.image_base64, body.mime_type)
    return {'analysis': analysis, 'parsed': ai_service.parse_fossil_analysis(analysis)}


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

@app.post('/api/sample-data', status_code=201)
def api_load_sample_data(body: SampleDataRequest, conn=Depends(get_conn)):
    loaded = store.load_sample_data(conn, SAMPLE_CORES, body.user_id)
    return {'loaded': loaded}


if __name__ == '__main__':
    import argparse
    import uvicorn
    parser = argparse.ArgumentParser()
    parser.add_argument('--db', type=str, default=None,
                        help='SQLite database path')
    args = parser.parse_args()
    if args.db:
        store._set_db_path_for_testing(args.db)
    uvicorn.run(app, host='0.0.0.0', port=8080)

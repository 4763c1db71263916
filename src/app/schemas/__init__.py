"""
요청/웹훅 페이로드 스키마
- creem: Creem 웹훅 엔벨로프 및 이벤트별 페이로드
- admin: 관리자 정산 API 요청 바디
"""
